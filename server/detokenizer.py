# =============================================================================
# Streaming Caption Server - Incremental Detokenizer
# =============================================================================
# Turns a growing token sequence into flushable text fragments.
#
# Subword tokenizers may merge several ids into one printable unit, so a
# fragment is only released once the decoded tail ends on an alphanumeric
# character. The window [prev_index:] is re-decoded each step and the text
# already emitted for [prev_index:current_index] is cut off the front, which
# keeps inter-token spacing identical to a full decode.
# =============================================================================

import logging
from typing import List, Optional

from tokenizers import Tokenizer

logger = logging.getLogger(__name__)


class IncrementalDetokenizer:
    """
    Streaming wrapper around a tokenizers.Tokenizer.

    Usage:
        detok = IncrementalDetokenizer(tokenizer)
        for token_id in ids:
            fragment = detok.push(token_id)   # str or None
        rest = detok.flush()                  # str or None, once

    Concatenating every non-None push() result and the flush() result
    reproduces ``tokenizer.decode(ids, skip_special_tokens=True)``.
    """

    def __init__(self, tokenizer: Tokenizer, skip_special_tokens: bool = True):
        self._tokenizer = tokenizer
        self._skip_special_tokens = skip_special_tokens
        self._tokens: List[int] = []
        self._prev_index = 0
        self._current_index = 0
        self._flushed = False

    @property
    def tokens(self) -> List[int]:
        return list(self._tokens)

    def _decode(self, ids: List[int]) -> str:
        if not ids:
            return ""
        return self._tokenizer.decode(ids, skip_special_tokens=self._skip_special_tokens)

    def _emitted_text(self) -> str:
        return self._decode(self._tokens[self._prev_index:self._current_index])

    def push(self, token_id: int) -> Optional[str]:
        """
        Add one token id; return newly stable text, or None if still buffering.
        """
        if self._flushed:
            raise RuntimeError("push() after flush()")

        prev_text = self._emitted_text()
        self._tokens.append(int(token_id))
        text = self._decode(self._tokens[self._prev_index:])

        if len(text) > len(prev_text) and text[-1].isalnum():
            fragment = text[len(prev_text):]
            self._prev_index = self._current_index
            self._current_index = len(self._tokens)
            return fragment
        return None

    def flush(self) -> Optional[str]:
        """
        Return any buffered trailing text exactly once; None afterwards.
        """
        if self._flushed:
            return None
        self._flushed = True

        prev_text = self._emitted_text()
        text = self._decode(self._tokens[self._prev_index:])
        self._prev_index = self._current_index = len(self._tokens)

        if len(text) > len(prev_text):
            return text[len(prev_text):]
        return None

    def text(self) -> str:
        """Canonical decoding of every token pushed so far."""
        return self._decode(self._tokens)
