# =============================================================================
# Streaming Caption Server - Streaming Session
# =============================================================================
# Per-connection state machine for the websocket endpoint.
#
#   CONNECTING --accept--> OPEN --binary frame--> STREAMING --<EOM>--> OPEN
#   OPEN/STREAMING --close frame or transport failure--> CLOSING --> CLOSED
#
# Three tasks share one connection:
#   - receiver:  reads inbound frames; queues image jobs, logs control frames
#                (at most JOB_BACKLOG images wait behind the one streaming;
#                further images are dropped)
#   - generator: runs caption jobs one at a time, posting fragments
#   - sender:    the only writer; drains the outbound mailbox in order
#
# The synchronous pipeline generator is advanced one step per
# asyncio.to_thread() call, so control frames keep flowing while the model
# runs and an abort only takes effect between decode steps.
# =============================================================================

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from fastapi import WebSocket, WebSocketDisconnect

from server.errors import PIPELINE_ERRORS, TransportError
from shared.schemas import END_OF_MESSAGE

logger = logging.getLogger(__name__)

PING_PAYLOAD = b"\x01\x02\x03"
CLOSE_NORMAL = 1000
CLOSE_NO_STATUS = 1005
JOB_BACKLOG = 1


class FrameKind(str, Enum):
    TEXT = "text"
    BINARY = "binary"
    PING = "ping"
    PONG = "pong"
    CLOSE = "close"


@dataclass(frozen=True)
class Frame:
    """One websocket frame, inbound or outbound."""

    kind: FrameKind
    data: Union[str, bytes] = b""
    code: Optional[int] = None
    reason: str = ""

    @classmethod
    def text(cls, data: str) -> "Frame":
        return cls(FrameKind.TEXT, data)

    @classmethod
    def binary(cls, data: bytes) -> "Frame":
        return cls(FrameKind.BINARY, data)

    @classmethod
    def ping(cls, data: bytes = PING_PAYLOAD) -> "Frame":
        return cls(FrameKind.PING, data)

    @classmethod
    def pong(cls, data: bytes = b"") -> "Frame":
        return cls(FrameKind.PONG, data)

    @classmethod
    def close(cls, code: Optional[int] = CLOSE_NORMAL, reason: str = "") -> "Frame":
        return cls(FrameKind.CLOSE, b"", code, reason)

    @property
    def is_sentinel(self) -> bool:
        return self.kind is FrameKind.TEXT and self.data == END_OF_MESSAGE


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


class StarletteTransport:
    """
    Frame transport over a FastAPI/Starlette WebSocket.

    ASGI does not expose protocol-level ping/pong, so PING and PONG frames
    are left to the server's websocket keepalive (uvicorn ``ws_ping_interval``).
    """

    def __init__(self, websocket: WebSocket):
        self._ws = websocket

    async def accept(self) -> None:
        try:
            await self._ws.accept()
        except (RuntimeError, OSError) as exc:
            raise TransportError(f"Websocket upgrade failed: {exc}") from exc

    async def receive(self) -> Frame:
        try:
            message = await self._ws.receive()
        except (RuntimeError, OSError, WebSocketDisconnect) as exc:
            raise TransportError(f"Receive failed: {exc}") from exc

        if message["type"] == "websocket.disconnect":
            return Frame.close(message.get("code", CLOSE_NO_STATUS), message.get("reason") or "")
        if message.get("bytes") is not None:
            return Frame.binary(message["bytes"])
        if message.get("text") is not None:
            return Frame.text(message["text"])
        raise TransportError(f"Unexpected ASGI message: {message['type']}")

    async def send(self, frame: Frame) -> bool:
        """Write a TEXT frame. Returns False for frames the server handles itself."""
        if frame.kind is not FrameKind.TEXT:
            logger.debug("%s frame left to server keepalive", frame.kind.value)
            return False
        try:
            await self._ws.send_text(frame.data)
        except (RuntimeError, OSError, WebSocketDisconnect) as exc:
            raise TransportError(f"Send failed: {exc}") from exc
        return True


class CaptionSession:
    """
    Streams captions for images received over one connection.

    Args:
        transport: Object with async accept(), receive() -> Frame and
                   send(Frame) -> bool (False when the frame was not written,
                   e.g. a ping left to server keepalive); raises
                   TransportError on failure.
        pipeline:  Object with stream(image_bytes, abort=...) -> Iterator[str]
                   (a CaptionPipeline or a test double).
        peer:      Remote address, used in log lines.
    """

    def __init__(self, transport, pipeline, peer: str = "unknown"):
        self._transport = transport
        self._pipeline = pipeline
        self.peer = peer
        self.state = SessionState.CONNECTING
        self.alive = True
        self.frames_received = 0
        self.captions_completed = 0
        self.jobs_dropped = 0
        self._abort = threading.Event()
        self._outbox: Optional[asyncio.Queue] = None
        self._jobs: Optional[asyncio.Queue] = None

    def __repr__(self) -> str:
        return f"CaptionSession(peer={self.peer!r}, state={self.state.value})"

    def _transition(self, state: SessionState) -> None:
        logger.debug("Session %s: %s -> %s", self.peer, self.state.value, state.value)
        self.state = state

    def _post(self, frame: Frame) -> None:
        """Queue an outbound frame for the sender task."""
        if self.alive:
            self._outbox.put_nowait(frame)

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def run(self) -> None:
        """Run the session until the peer closes or the transport fails."""
        self._outbox = asyncio.Queue()
        self._jobs = asyncio.Queue(maxsize=JOB_BACKLOG)

        try:
            await self._transport.accept()
        except TransportError as exc:
            logger.warning("Could not open session with %s: %s", self.peer, exc)
            self.alive = False
            self._transition(SessionState.CLOSED)
            return

        self._transition(SessionState.OPEN)
        self._post(Frame.ping())

        sender = asyncio.create_task(self._send_loop())
        receiver = asyncio.create_task(self._receive_loop())
        generator = asyncio.create_task(self._generation_loop())
        try:
            await asyncio.wait(
                {sender, receiver, generator}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            await self._teardown(sender, receiver, generator)

        logger.info("Websocket context %s destroyed", self.peer)

    async def _teardown(self, sender, receiver, generator) -> None:
        self._transition(SessionState.CLOSING)
        self.alive = False
        self._abort.set()

        receiver.cancel()
        # The generator stops at its next step boundary; a full queue means it
        # is busy and will see alive=False before taking another job
        try:
            self._jobs.put_nowait(None)
        except asyncio.QueueFull:
            pass
        await asyncio.wait({generator})
        sender.cancel()

        results = await asyncio.gather(sender, receiver, generator, return_exceptions=True)
        for name, result in zip(("sender", "receiver", "generator"), results):
            if isinstance(result, Exception):
                logger.error(
                    "Session %s %s task failed", self.peer, name,
                    exc_info=(type(result), result, result.__traceback__),
                )

        self._transition(SessionState.CLOSED)

    # -----------------------------------------------------------------
    # Tasks
    # -----------------------------------------------------------------

    async def _send_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                delivered = await self._transport.send(frame)
            except TransportError as exc:
                logger.info("Client %s abruptly disconnected: %s", self.peer, exc)
                return
            if frame.kind is FrameKind.PING and delivered:
                logger.info("Pinged %s...", self.peer)

    async def _receive_loop(self) -> None:
        while True:
            try:
                frame = await self._transport.receive()
            except TransportError as exc:
                logger.info("Client %s abruptly disconnected: %s", self.peer, exc)
                return

            self.frames_received += 1

            if frame.kind is FrameKind.CLOSE:
                if frame.code is not None:
                    logger.info(
                        ">>> %s sent close with code %s and reason `%s`",
                        self.peer, frame.code, frame.reason,
                    )
                else:
                    logger.info(">>> %s sent close message without a close frame", self.peer)
                return
            elif frame.kind is FrameKind.BINARY:
                logger.info(">>> %s sent %d bytes", self.peer, len(frame.data))
                try:
                    self._jobs.put_nowait(frame.data)
                except asyncio.QueueFull:
                    self.jobs_dropped += 1
                    logger.warning(
                        "Dropped %d byte image from %s: a caption is already in progress",
                        len(frame.data), self.peer,
                    )
            elif frame.kind is FrameKind.TEXT:
                logger.debug(">>> %s sent str: %r", self.peer, frame.data)
            else:
                logger.debug(">>> %s sent %s with %r", self.peer, frame.kind.value, frame.data)

    async def _generation_loop(self) -> None:
        while True:
            image = await self._jobs.get()
            if image is None or not self.alive:
                return
            await self._caption(image)

    async def _caption(self, image: bytes) -> None:
        """Stream one caption, then the sentinel unless the connection is gone."""
        self._transition(SessionState.STREAMING)
        stream = self._pipeline.stream(image, abort=self._abort)
        n_fragments = 0
        try:
            while self.alive:
                fragment = await asyncio.to_thread(next, stream, None)
                if fragment is None:
                    break
                if fragment:
                    n_fragments += 1
                    self._post(Frame.text(fragment))
        except PIPELINE_ERRORS as exc:
            logger.warning("Caption for %s failed: %s", self.peer, exc)
        finally:
            stream.close()

        if not self.alive:
            logger.info("Caption for %s abandoned after %d fragments", self.peer, n_fragments)
            return

        self._post(Frame.text(END_OF_MESSAGE))
        self.captions_completed += 1
        logger.debug("Caption for %s complete (%d fragments)", self.peer, n_fragments)
        self._transition(SessionState.OPEN)
