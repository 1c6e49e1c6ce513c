# tests/test_decoding.py
"""Tests for the autoregressive decode loop and its token sequence."""

import itertools
import threading

import pytest
import torch

from helpers.fakes import SEP, FakeHandle
from server.decoding import (
    BOS_TOKEN_ID,
    MAX_STEPS,
    SEP_TOKEN_ID,
    DecodeStep,
    TokenSequence,
    generate,
)
from server.errors import InferenceError

PIXELS = torch.zeros(3, 384, 384)


def _ids(steps):
    return [step.token_id for step in steps]


class TestTokenSequence:

    def test_seeded_with_bos(self):
        tokens = TokenSequence()
        assert tokens.ids == (BOS_TOKEN_ID,)
        assert tokens.generated == ()
        assert len(tokens) == 1

    def test_append_only_order(self):
        tokens = TokenSequence(bos_token_id=1)
        for token_id in (5, 6, 7):
            tokens.append(token_id)
        assert tokens.ids == (1, 5, 6, 7)
        assert tokens.generated == (5, 6, 7)

    def test_context_full_then_last(self):
        tokens = TokenSequence(bos_token_id=1)
        assert tokens.context(0) == [1]
        tokens.append(9)
        tokens.append(10)
        assert tokens.context(0) == [1, 9, 10]
        assert tokens.context(2) == [10]

    def test_max_length_enforced(self):
        tokens = TokenSequence(bos_token_id=1, max_length=2)
        tokens.append(3)
        with pytest.raises(ValueError):
            tokens.append(4)


class TestGenerate:

    def test_constants(self):
        assert BOS_TOKEN_ID == 30522
        assert SEP_TOKEN_ID == 102
        assert MAX_STEPS == 1000

    def test_stops_on_separator_without_emitting_it(self):
        handle = FakeHandle([5, 6, 7, SEP])
        assert _ids(generate(handle, PIXELS)) == [5, 6, 7]

    def test_separator_at_step_zero_yields_nothing(self):
        handle = FakeHandle([SEP])
        assert list(generate(handle, PIXELS)) == []
        assert handle.contexts == [[BOS_TOKEN_ID]]

    def test_context_is_full_sequence_then_single_token(self):
        handle = FakeHandle([5, 6, 7, SEP])
        list(generate(handle, PIXELS))
        assert handle.contexts == [[BOS_TOKEN_ID], [5], [6], [7]]

    def test_image_embedded_once_and_cache_reset(self):
        handle = FakeHandle([5, 6, SEP])
        list(generate(handle, PIXELS))
        assert handle.embed_calls == 1
        assert handle.resets == 1

    def test_truncates_at_step_cap(self):
        handle = FakeHandle([5])
        steps = list(generate(handle, PIXELS, max_steps=7))
        assert _ids(steps) == [5] * 7
        assert [s.index for s in steps] == list(range(7))
        assert steps[-1].is_final
        assert not any(s.is_final for s in steps[:-1])

    def test_full_step_cap_never_ends_on_separator(self):
        handle = FakeHandle([11])
        steps = list(generate(handle, PIXELS))
        assert len(steps) == MAX_STEPS
        assert steps[-1].token_id != SEP_TOKEN_ID

    def test_is_lazy(self):
        handle = FakeHandle([5, 6, 7, 8, SEP])
        first_two = list(itertools.islice(generate(handle, PIXELS), 2))
        assert _ids(first_two) == [5, 6]
        assert len(handle.contexts) == 2

    def test_abort_before_start(self):
        abort = threading.Event()
        abort.set()
        handle = FakeHandle([5, SEP])
        assert list(generate(handle, PIXELS, abort=abort)) == []
        assert handle.contexts == []

    def test_abort_between_steps(self):
        abort = threading.Event()
        handle = FakeHandle([5, 6, 7, 8, SEP])
        emitted = []
        for step in generate(handle, PIXELS, abort=abort):
            emitted.append(step.token_id)
            if len(emitted) == 2:
                abort.set()
        assert emitted == [5, 6]
        assert len(handle.contexts) == 2

    def test_inference_error_propagates(self):
        handle = FakeHandle([5, 6, 7, SEP], fail_at=2)
        gen = generate(handle, PIXELS)
        assert next(gen).token_id == 5
        assert next(gen).token_id == 6
        with pytest.raises(InferenceError):
            next(gen)

    def test_custom_separator(self):
        handle = FakeHandle([5, 6, 9])
        assert _ids(generate(handle, PIXELS, sep_token_id=9)) == [5, 6]

    def test_decode_step_defaults(self):
        step = DecodeStep(token_id=4, index=0)
        assert not step.is_final
