# tests/helpers/fakes.py
#
# Test doubles for the captioning pipeline: a scripted model handle, a
# provider that hands it out, a canned-fragment pipeline, an in-memory frame
# transport, and small factories for images and a WordPiece tokenizer.

import asyncio
import io
import time
from typing import List, Optional, Sequence

import torch
from PIL import Image
from tokenizers import Tokenizer, decoders
from tokenizers.models import WordPiece

from server.errors import TransportError

VOCAB = [
    "[PAD]", "[UNK]", "[CLS]", "[SEP]",
    "a", "dog", "cat", "on", "the", "grass", "sitting", "red",
    "##s", "##ty", "##ing", ".", ",",
]
TOKEN = {token: index for index, token in enumerate(VOCAB)}
SEP = 102


def make_tokenizer() -> Tokenizer:
    """Tiny BERT-style WordPiece tokenizer built in memory."""
    tokenizer = Tokenizer(WordPiece(vocab=dict(TOKEN), unk_token="[UNK]"))
    tokenizer.decoder = decoders.WordPiece(prefix="##", cleanup=True)
    tokenizer.add_special_tokens(["[PAD]", "[CLS]", "[SEP]"])
    return tokenizer


def ids(*tokens: str) -> List[int]:
    return [TOKEN[t] for t in tokens]


def image_bytes(size=(1, 1), color=(255, 0, 0), fmt="PNG", mode="RGB") -> bytes:
    """Encode a solid-color image."""
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


class FakeHandle:
    """
    Model handle that emits a fixed token script.

    Step i returns logits strongly favoring script[i] (the last entry repeats
    once the script runs out). Records every context it was fed.
    """

    def __init__(self, script: Sequence[int], vocab_size: int = 200, fail_at: Optional[int] = None):
        self.script = list(script)
        self.vocab_size = vocab_size
        self.fail_at = fail_at
        self.contexts: List[List[int]] = []
        self.embed_calls = 0
        self.resets = 0

    def reset(self):
        self.resets += 1

    def embed_image(self, pixel_values):
        self.embed_calls += 1
        return torch.zeros(1, 4, 8)

    def next_token_logits(self, context_ids, image_embeds):
        from server.errors import InferenceError

        step = len(self.contexts)
        if self.fail_at is not None and step == self.fail_at:
            raise InferenceError("shape mismatch")
        self.contexts.append(list(context_ids))
        logits = torch.zeros(self.vocab_size)
        logits[self.script[min(step, len(self.script) - 1)]] = 1e4
        return logits


class FakeProvider:
    """ModelProvider stand-in that returns fresh FakeHandles."""

    def __init__(self, script: Sequence[int], tokenizer: Optional[Tokenizer] = None, error=None):
        self.script = list(script)
        self._tokenizer = tokenizer or make_tokenizer()
        self.error = error
        self.resolve_calls = []
        self.handles: List[FakeHandle] = []

    def resolve(self, variant, model_id, revision):
        self.resolve_calls.append((variant, model_id, revision))
        if self.error is not None:
            raise self.error
        handle = FakeHandle(self.script)
        self.handles.append(handle)
        return handle

    def tokenizer(self, model_id):
        return self._tokenizer


class FakePipeline:
    """Pipeline stand-in yielding canned fragments, optionally slowly or failing."""

    def __init__(self, fragments=("a", " dog"), error=None, delay: float = 0.0):
        self.fragments = list(fragments)
        self.error = error
        self.delay = delay
        self.images: List[bytes] = []
        self.produced = 0

    def stream(self, image, abort=None):
        self.images.append(image)
        for fragment in self.fragments:
            if abort is not None and abort.is_set():
                return
            if self.delay:
                time.sleep(self.delay)
            self.produced += 1
            yield fragment
        if self.error is not None:
            raise self.error

    def caption(self, image):
        return "".join(self.stream(image))


class FakeTransport:
    """
    In-memory frame transport.

    Tests push inbound frames (or exceptions to raise) onto ``inbound``;
    outbound frames are recorded in ``sent``. After ``fail_after`` successful
    sends every further send raises TransportError.
    """

    def __init__(self, fail_after: Optional[int] = None, fail_accept: bool = False):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.fail_after = fail_after
        self.fail_accept = fail_accept
        self.accepted = False

    async def accept(self):
        if self.fail_accept:
            raise TransportError("upgrade refused")
        self.accepted = True

    async def receive(self):
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, frame):
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise TransportError("broken pipe")
        self.sent.append(frame)
        return True


async def wait_until(predicate, timeout: float = 5.0):
    """Poll ``predicate`` on the event loop until it is true."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
