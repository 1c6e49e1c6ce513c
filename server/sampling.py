# =============================================================================
# Streaming Caption Server - Logits Sampler
# =============================================================================
# Seeded token sampling over a single vocabulary logits vector.
#
#   temperature=None, top_p=None  -> categorical sampling over softmax(logits)
#   temperature <= 0              -> argmax (greedy)
#   top_p in (0, 1)               -> nucleus filtering before sampling
#
# Each sampler owns its own torch.Generator, so two samplers built with the
# same seed draw identical sequences from identical logits.
# =============================================================================

from typing import Optional

import torch

from server.errors import InferenceError

DEFAULT_SEED = 1337


class LogitsSampler:
    """
    Draws one token id per call from a logits vector.

    Args:
        seed:        Seed for the private random generator.
        temperature: Optional softmax temperature; <= 0 selects argmax.
        top_p:       Optional nucleus probability mass to keep.
    """

    def __init__(
        self,
        seed: int = DEFAULT_SEED,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
    ):
        self._seed = seed
        self._temperature = temperature
        self._top_p = top_p
        self._generator = torch.Generator(device="cpu")
        self._generator.manual_seed(seed)

    def __repr__(self) -> str:
        return (
            f"LogitsSampler(seed={self._seed}, temperature={self._temperature}, "
            f"top_p={self._top_p})"
        )

    def sample(self, logits: torch.Tensor) -> int:
        """
        Sample a token id from a 1-D logits tensor.

        Raises:
            InferenceError: If the logits are not 1-D or yield no valid distribution.
        """
        if logits.dim() != 1:
            raise InferenceError(f"Expected 1-D logits, got shape {tuple(logits.shape)}")

        logits = logits.detach().to(device="cpu", dtype=torch.float32)

        if self._temperature is not None and self._temperature <= 0:
            return int(torch.argmax(logits).item())

        if self._temperature is not None:
            logits = logits / self._temperature

        probs = torch.softmax(logits, dim=-1)
        if not torch.isfinite(probs).all():
            raise InferenceError("Logits produced a non-finite probability distribution")

        if self._top_p is not None and 0.0 < self._top_p < 1.0:
            probs = self._nucleus(probs)

        return int(torch.multinomial(probs, num_samples=1, generator=self._generator).item())

    def _nucleus(self, probs: torch.Tensor) -> torch.Tensor:
        """Zero out the tail beyond the smallest prefix holding top_p of the mass."""
        sorted_probs, sorted_idx = torch.sort(probs, descending=True)
        cumulative = torch.cumsum(sorted_probs, dim=-1)
        # Keep a token while the mass before it is still below top_p
        keep = (cumulative - sorted_probs) < self._top_p
        sorted_probs = torch.where(keep, sorted_probs, torch.zeros_like(sorted_probs))

        filtered = torch.zeros_like(probs)
        filtered.scatter_(0, sorted_idx, sorted_probs)
        return filtered / filtered.sum()
