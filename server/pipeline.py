# =============================================================================
# Streaming Caption Server - Captioning Pipeline
# =============================================================================
# Ties the four inner components together for one request:
#
#   image bytes -> preprocess() -> ModelProvider (handle + tokenizer)
#               -> generate() -> IncrementalDetokenizer -> text fragments
#
# stream() yields fragments as they become stable and is shared by the
# websocket session; caption() buffers them for the one-shot HTTP path.
# Each call loads its own model handle and tokenizer (no cross-request cache).
# =============================================================================

import logging
import threading
import time
from typing import Iterator, Optional, Tuple

from tokenizers import Tokenizer

from config import Config
from server.decoding import generate
from server.detokenizer import IncrementalDetokenizer
from server.models import ModelHandle, ModelProvider, ModelVariant
from server.preprocess import preprocess
from server.sampling import LogitsSampler

logger = logging.getLogger(__name__)


class CaptionPipeline:
    """
    Streaming autoregressive captioning for a single configured model.

    Args:
        config:   Config with model identity, variant and decoding parameters.
        provider: Source of model handles and tokenizers. Defaults to a
                  hub-backed ModelProvider built from ``config``.
    """

    def __init__(self, config: Config, provider: Optional[ModelProvider] = None):
        self._config = config
        self._variant = ModelVariant.parse(config.model_variant)
        self._provider = provider or ModelProvider(
            device=config.device,
            cache_dir=config.cache_dir,
            tokenizer_revision=config.tokenizer_revision,
        )

    @property
    def variant(self) -> ModelVariant:
        return self._variant

    def load(self) -> Tuple[ModelHandle, Tokenizer]:
        """
        Resolve the configured model and its tokenizer.

        Raises:
            WeightLoadError: If the weights cannot be fetched or parsed.
            TokenizerLoadError: If the vocabulary cannot be fetched or parsed.
        """
        config = self._config
        handle = self._provider.resolve(self._variant, config.model_id, config.model_revision)
        tokenizer = self._provider.tokenizer(config.model_id)
        return handle, tokenizer

    def _sampler(self) -> LogitsSampler:
        return LogitsSampler(
            seed=self._config.seed,
            temperature=self._config.temperature,
            top_p=self._config.top_p,
        )

    def stream(self, image: bytes, abort: Optional[threading.Event] = None) -> Iterator[str]:
        """
        Caption ``image``, yielding non-empty text fragments in order.

        The trailing remainder held back by the detokenizer is yielded last.
        Stops early (without the remainder) once ``abort`` is set.

        Raises:
            DecodeError, WeightLoadError, TokenizerLoadError, InferenceError
        """
        config = self._config
        start = time.time()

        pixel_values = preprocess(image, size=config.image_size)
        handle, tokenizer = self.load()
        load_ms = (time.time() - start) * 1000.0

        detokenizer = IncrementalDetokenizer(tokenizer)
        steps = generate(
            handle,
            pixel_values,
            self._sampler(),
            bos_token_id=config.bos_token_id,
            sep_token_id=config.sep_token_id,
            max_steps=config.max_steps,
            abort=abort,
        )
        n_tokens = 0
        try:
            for step in steps:
                n_tokens += 1
                fragment = detokenizer.push(step.token_id)
                if fragment:
                    yield fragment
        finally:
            steps.close()

        if abort is not None and abort.is_set():
            logger.info("Caption aborted after %d tokens", n_tokens)
            return

        rest = detokenizer.flush()
        if rest:
            yield rest

        logger.info(
            "Captioned %d bytes -> %d tokens (load %.1fms, total %.1fms): %s",
            len(image), n_tokens, load_ms, (time.time() - start) * 1000.0,
            detokenizer.text(),
        )

    def caption(self, image: bytes) -> str:
        """Caption ``image`` and return the full text at once."""
        return "".join(self.stream(image))
