# =============================================================================
# Streaming Caption Server - Model Provider
# =============================================================================
# Resolves a model variant into a ModelHandle: one incremental-forward
# contract over the BLIP vision encoder and text decoder, regardless of
# whether the weights are held in full float32 precision or int8-quantized.
#
# Variants:
#   - FULL_PRECISION: float32 weights on the configured device.
#   - QUANTIZED:      every nn.Linear replaced by a weight-only int8 layer
#                     with per-output-row scales, on CPU. Logits are a
#                     lower-precision approximation of the full model.
#
# The handle keeps the text decoder's key/value cache between calls so the
# decode loop can feed only the newest token after the first step.
# =============================================================================

import logging
import time
from enum import Enum
from typing import Optional, Sequence

import torch
import torch.nn as nn
import torch.nn.functional as F
from tokenizers import Tokenizer
from transformers import BlipForConditionalGeneration

from server.errors import InferenceError, TokenizerLoadError, WeightLoadError
from server.hub import ModelFiles, fetch_model_files, fetch_tokenizer_file

logger = logging.getLogger(__name__)


class ModelVariant(str, Enum):
    """Which weight representation backs a ModelHandle."""

    FULL_PRECISION = "full"
    QUANTIZED = "quantized"

    @classmethod
    def parse(cls, value: "str | ModelVariant") -> "ModelVariant":
        """Accept either a variant or its config string ("full" / "quantized")."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unsupported model variant '{value}'. "
                f"Supported: {[v.value for v in cls]}"
            ) from None


class Int8Linear(nn.Module):
    """
    Weight-only int8 replacement for nn.Linear.

    Weights are stored as int8 with one float32 scale per output row and
    dequantized on the fly; activations stay in float32.
    """

    def __init__(self, linear: nn.Linear):
        super().__init__()
        self.in_features = linear.in_features
        self.out_features = linear.out_features

        weight = linear.weight.detach().to(torch.float32)
        scale = weight.abs().amax(dim=1, keepdim=True).clamp(min=1e-8) / 127.0
        self.register_buffer("weight_int8", torch.round(weight / scale).to(torch.int8))
        self.register_buffer("scale", scale)
        if linear.bias is not None:
            self.register_buffer("bias", linear.bias.detach().to(torch.float32).clone())
        else:
            self.bias = None

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        weight = self.weight_int8.to(x.dtype) * self.scale.to(x.dtype)
        bias = self.bias.to(x.dtype) if self.bias is not None else None
        return F.linear(x, weight, bias)

    def extra_repr(self) -> str:
        return f"in_features={self.in_features}, out_features={self.out_features}, int8"


def quantize_linear_layers(module: nn.Module) -> int:
    """
    Replace every nn.Linear below ``module`` with an Int8Linear, in place.

    Returns:
        The number of layers replaced.
    """
    replaced = 0
    for name, child in module.named_children():
        if isinstance(child, nn.Linear):
            setattr(module, name, Int8Linear(child))
            replaced += 1
        else:
            replaced += quantize_linear_layers(child)
    return replaced


class ModelHandle:
    """
    Incremental-forward capability over a loaded BLIP captioning model.

    Callers use the same two operations for every variant:
        - embed_image(pixel_values) -> image embedding
        - next_token_logits(context_ids, image_embeds) -> logits for the
          final position of the context

    The text decoder's key/value cache is retained between
    next_token_logits() calls; reset() discards it before a new sequence.

    Args:
        model:   A BlipForConditionalGeneration (possibly quantized).
        variant: The variant that produced this handle.
        device:  Device the model lives on.
    """

    def __init__(self, model: nn.Module, variant: ModelVariant, device: str = "cpu"):
        self._model = model
        self._variant = variant
        self._device = device
        self._past = None

    @property
    def variant(self) -> ModelVariant:
        return self._variant

    @property
    def device(self) -> str:
        return self._device

    def reset(self) -> None:
        """Drop the cached decoder state so the next call starts a new sequence."""
        self._past = None

    @torch.no_grad()
    def embed_image(self, pixel_values: torch.Tensor) -> torch.Tensor:
        """
        Run the vision encoder on one preprocessed image.

        Args:
            pixel_values: (3, H, W) float32 tensor from the preprocessor.

        Returns:
            (1, n_patches + 1, vision_dim) image embedding.

        Raises:
            InferenceError: On shape or numeric failures.
        """
        if pixel_values.dim() != 3:
            raise InferenceError(
                f"Expected a (3, H, W) image tensor, got shape {tuple(pixel_values.shape)}"
            )
        try:
            batch = pixel_values.unsqueeze(0).to(self._device)
            return self._model.vision_model(pixel_values=batch)[0]
        except (RuntimeError, ValueError, IndexError) as exc:
            raise InferenceError(f"Vision encoder failed: {exc}") from exc

    @torch.no_grad()
    def next_token_logits(
        self,
        context_ids: Sequence[int],
        image_embeds: torch.Tensor,
    ) -> torch.Tensor:
        """
        Compute next-token logits for the final position of ``context_ids``.

        ``context_ids`` holds the tokens not yet seen by the decoder: the
        whole prefix after reset(), then one new token per call.

        Returns:
            1-D float32 CPU tensor of vocabulary logits.

        Raises:
            InferenceError: On shape or numeric failures.
        """
        if len(context_ids) == 0:
            raise InferenceError("Empty decoder context")
        try:
            input_ids = torch.tensor([list(context_ids)], dtype=torch.long, device=self._device)
            outputs = self._model.text_decoder(
                input_ids=input_ids,
                encoder_hidden_states=image_embeds,
                past_key_values=self._past,
                use_cache=True,
                return_dict=True,
            )
        except (RuntimeError, ValueError, IndexError) as exc:
            raise InferenceError(f"Text decoder failed: {exc}") from exc

        self._past = outputs.past_key_values
        return outputs.logits[0, -1].to(torch.float32).cpu()


def build_handle(
    model: nn.Module,
    variant: ModelVariant,
    device: str = "cpu",
) -> ModelHandle:
    """
    Wrap an instantiated BLIP model as a handle of the requested variant.

    For QUANTIZED the model is moved to CPU and its linear layers are
    replaced with int8 equivalents.
    """
    variant = ModelVariant.parse(variant)
    model = model.to(torch.float32)

    if variant is ModelVariant.QUANTIZED:
        if device != "cpu":
            logger.info("Quantized variant runs on CPU (requested device=%s)", device)
        device = "cpu"
        model = model.to(device)
        replaced = quantize_linear_layers(model)
        logger.info("Quantized %d linear layers to int8", replaced)
    else:
        model = model.to(device)

    model.eval()
    return ModelHandle(model, variant, device)


def load_model(
    files: ModelFiles,
    variant: ModelVariant,
    device: str = "cpu",
) -> ModelHandle:
    """
    Load BLIP weights from a local snapshot into a ModelHandle.

    Raises:
        WeightLoadError: If the weights or config cannot be parsed.
    """
    start = time.time()
    try:
        model = BlipForConditionalGeneration.from_pretrained(files.snapshot_dir)
    except (OSError, ValueError, RuntimeError) as exc:
        raise WeightLoadError(f"Failed to load weights from {files.snapshot_dir}: {exc}") from exc

    handle = build_handle(model, variant, device)
    logger.info(
        "Model ready: variant=%s device=%s (%.1fs)",
        handle.variant.value, handle.device, time.time() - start,
    )
    return handle


def load_tokenizer(path: str) -> Tokenizer:
    """
    Load a tokenizer.json vocabulary.

    Raises:
        TokenizerLoadError: If the file cannot be parsed.
    """
    try:
        return Tokenizer.from_file(path)
    except Exception as exc:
        raise TokenizerLoadError(f"Failed to load tokenizer from {path}: {exc}") from exc


class ModelProvider:
    """
    Materializes ModelHandles and tokenizers from the model repository.

    Nothing is cached across calls: each request resolves and loads its own
    handle and vocabulary (the hub's on-disk cache still avoids repeated
    downloads).

    Args:
        device:             Compute device for full-precision handles.
        cache_dir:          Optional huggingface_hub cache directory.
        tokenizer_revision: Revision to fetch tokenizer.json from.
    """

    def __init__(
        self,
        device: str = "cpu",
        cache_dir: Optional[str] = None,
        tokenizer_revision: str = "main",
    ):
        self._device = device
        self._cache_dir = cache_dir
        self._tokenizer_revision = tokenizer_revision

    def resolve(
        self,
        variant: "str | ModelVariant",
        model_id: str,
        revision: str,
    ) -> ModelHandle:
        """Fetch and load ``model_id@revision`` as the requested variant."""
        variant = ModelVariant.parse(variant)
        logger.info("Resolving model %s@%s (variant=%s)", model_id, revision, variant.value)
        files = fetch_model_files(model_id, revision, cache_dir=self._cache_dir)
        return load_model(files, variant, device=self._device)

    def tokenizer(self, model_id: str) -> Tokenizer:
        """Fetch and load the tokenizer vocabulary for ``model_id``."""
        path = fetch_tokenizer_file(
            model_id, revision=self._tokenizer_revision, cache_dir=self._cache_dir
        )
        return load_tokenizer(path)
