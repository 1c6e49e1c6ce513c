# tests/test_detokenizer.py
"""Tests for incremental detokenization."""

import random

import pytest

from helpers.fakes import TOKEN, ids
from server.detokenizer import IncrementalDetokenizer

WORDS = ["a", "dog", "cat", "on", "the", "grass", "sitting", "red", "##s", "##ty", "##ing", ".", ","]


def _run(tokenizer, token_ids):
    detok = IncrementalDetokenizer(tokenizer)
    fragments = [detok.push(t) for t in token_ids]
    rest = detok.flush()
    return detok, fragments, rest


class TestIncrementalDetokenizer:

    def test_words_emitted_as_they_complete(self, tokenizer):
        _, fragments, rest = _run(tokenizer, ids("a", "dog", "on", "the", "grass"))
        assert fragments == ["a", " dog", " on", " the", " grass"]
        assert rest is None

    def test_subword_continuation(self, tokenizer):
        _, fragments, rest = _run(tokenizer, ids("a", "dog", "##s"))
        assert "".join(fragments) == "a dogs"
        assert fragments[-1] == "s"
        assert rest is None

    def test_trailing_punctuation_held_until_flush(self, tokenizer):
        _, fragments, rest = _run(tokenizer, ids("a", "cat", "."))
        assert fragments == ["a", " cat", None]
        assert rest == "."

    def test_punctuation_released_with_next_word(self, tokenizer):
        _, fragments, _ = _run(tokenizer, ids("dog", ",", "cat"))
        assert fragments == ["dog", None, ", cat"]

    def test_flush_is_idempotent(self, tokenizer):
        detok = IncrementalDetokenizer(tokenizer)
        detok.push(TOKEN["red"])
        detok.push(TOKEN["."])
        assert detok.flush() == "."
        assert detok.flush() is None

    def test_flush_on_empty(self, tokenizer):
        detok = IncrementalDetokenizer(tokenizer)
        assert detok.flush() is None
        assert detok.text() == ""

    def test_push_after_flush_rejected(self, tokenizer):
        detok = IncrementalDetokenizer(tokenizer)
        detok.flush()
        with pytest.raises(RuntimeError):
            detok.push(TOKEN["a"])

    def test_special_tokens_are_skipped(self, tokenizer):
        _, fragments, rest = _run(tokenizer, ids("a", "[SEP]", "dog"))
        text = "".join(f for f in fragments if f) + (rest or "")
        assert text == tokenizer.decode(ids("a", "[SEP]", "dog"), skip_special_tokens=True)

    def test_round_trip_random_sequences(self, tokenizer):
        """concat(push results) + flush() equals the full decoding."""
        rng = random.Random(1337)
        for _ in range(200):
            token_ids = [TOKEN[rng.choice(WORDS)] for _ in range(rng.randint(0, 25))]
            detok, fragments, rest = _run(tokenizer, token_ids)
            streamed = "".join(f for f in fragments if f) + (rest or "")
            assert streamed == tokenizer.decode(token_ids, skip_special_tokens=True), token_ids
            assert streamed == detok.text()
            assert detok.flush() is None

    def test_tokens_property_copies(self, tokenizer):
        detok = IncrementalDetokenizer(tokenizer)
        detok.push(TOKEN["a"])
        detok.tokens.append(99)
        assert detok.tokens == [TOKEN["a"]]
