# =============================================================================
# Streaming Caption Server - Autoregressive Decode Loop
# =============================================================================
# Drives token-by-token caption generation against a ModelHandle:
#
#   1. Embed the image once.
#   2. Seed the token sequence with the BOS id.
#   3. Per step: feed the decoder its unseen context (the whole sequence on
#      step 0, the newest id afterwards), sample one id from the final
#      position's logits, stop on the separator id, otherwise append + yield.
#   4. Stop unconditionally after max_steps.
#
# generate() is a lazy generator: the consumer may stop pulling at any time,
# and an abort event (threading.Event) is checked between steps, never
# mid-forward.
# =============================================================================

import logging
import threading
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import torch

from server.sampling import LogitsSampler

logger = logging.getLogger(__name__)

BOS_TOKEN_ID = 30522
SEP_TOKEN_ID = 102
MAX_STEPS = 1000


class TokenSequence:
    """
    Append-only sequence of token ids seeded with a BOS id.

    Args:
        bos_token_id: Id placed at position 0.
        max_length:   Optional hard cap on the total length (BOS included).
    """

    __slots__ = ("_ids", "_max_length")

    def __init__(self, bos_token_id: int = BOS_TOKEN_ID, max_length: Optional[int] = None):
        self._ids: List[int] = [bos_token_id]
        self._max_length = max_length

    def __len__(self) -> int:
        return len(self._ids)

    def __repr__(self) -> str:
        return f"TokenSequence({self._ids!r})"

    @property
    def ids(self) -> Tuple[int, ...]:
        return tuple(self._ids)

    @property
    def generated(self) -> Tuple[int, ...]:
        """Ids appended after the BOS seed."""
        return tuple(self._ids[1:])

    def append(self, token_id: int) -> None:
        if self._max_length is not None and len(self._ids) >= self._max_length:
            raise ValueError(f"TokenSequence is full ({self._max_length} ids)")
        self._ids.append(int(token_id))

    def context(self, step: int) -> List[int]:
        """Ids the decoder has not seen yet at ``step``."""
        if step == 0:
            return list(self._ids)
        return self._ids[-1:]


@dataclass(frozen=True)
class DecodeStep:
    """
    One emitted token.

    Attributes:
        token_id: The sampled id (never the separator).
        index:    Zero-based step index that produced it.
        is_final: True when this step hit the step cap, so no further
                  token can follow. Separator termination is signalled by
                  the generator being exhausted.
    """

    token_id: int
    index: int
    is_final: bool = False


def generate(
    handle,
    pixel_values: torch.Tensor,
    sampler: Optional[LogitsSampler] = None,
    *,
    bos_token_id: int = BOS_TOKEN_ID,
    sep_token_id: int = SEP_TOKEN_ID,
    max_steps: int = MAX_STEPS,
    abort: Optional[threading.Event] = None,
) -> Iterator[DecodeStep]:
    """
    Lazily generate caption token ids for one image.

    Args:
        handle:       Object exposing embed_image(), next_token_logits() and
                      reset() (a ModelHandle or a test double).
        pixel_values: (3, H, W) tensor from the preprocessor.
        sampler:      Token sampler; defaults to a seeded LogitsSampler.
        bos_token_id: Sequence seed id.
        sep_token_id: Terminal id; consumed, never yielded.
        max_steps:    Hard cap on decode steps.
        abort:        Optional event checked before every step.

    Yields:
        DecodeStep for each appended token, in generation order.

    Raises:
        InferenceError: Propagated from the handle or the sampler; no retries.
    """
    if sampler is None:
        sampler = LogitsSampler()

    handle.reset()
    image_embeds = handle.embed_image(pixel_values)
    tokens = TokenSequence(bos_token_id, max_length=max_steps + 1)

    for index in range(max_steps):
        if abort is not None and abort.is_set():
            logger.debug("Generation aborted before step %d", index)
            return

        logits = handle.next_token_logits(tokens.context(index), image_embeds)
        token_id = sampler.sample(logits)

        if token_id == sep_token_id:
            logger.debug("Separator after %d tokens", len(tokens) - 1)
            return

        tokens.append(token_id)
        yield DecodeStep(token_id=token_id, index=index, is_final=index == max_steps - 1)

    logger.info("Generation truncated at the %d step cap", max_steps)
