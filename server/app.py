# =============================================================================
# Streaming Caption Server - FastAPI Application
# =============================================================================
# HTTP and websocket surface over the captioning pipeline:
#
#   GET  /        - minimal multipart upload form
#   GET  /health  - liveness + configured model
#   POST /caption - one-shot caption of the first uploaded file (201, text)
#   WS   /ws      - streaming captions: binary image in, text fragments out,
#                   "<EOM>" after each caption
# =============================================================================

import logging
import time
from contextlib import asynccontextmanager
from typing import Tuple

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import HTMLResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.types import Message, Receive

from config import get_config
from server.errors import CaptionError
from server.pipeline import CaptionPipeline
from server.session import CaptionSession, StarletteTransport
from shared.schemas import HealthResponse

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Global references populated during lifespan startup
# ---------------------------------------------------------------------------
_pipeline: CaptionPipeline = None
_start_time: float = 0.0

_UPLOAD_FORM = """
<!doctype html>
<html>
    <head><title>Caption an image</title></head>
    <body>
        <form action="/caption" method="post" enctype="multipart/form-data">
            <label>
                Upload file:
                <input type="file" name="file">
            </label>
            <input type="submit" value="Caption">
        </form>
    </body>
</html>
"""


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Builds the captioning pipeline. Model weights are not loaded here: every
    request resolves its own model handle and tokenizer.
    """
    global _pipeline, _start_time

    config = get_config()
    _start_time = time.time()

    logger.info(
        "Starting server — model %s@%s (variant=%s, device=%s)",
        config.model_id, config.model_revision, config.model_variant, config.device,
    )
    _pipeline = CaptionPipeline(config)

    logger.info("Server ready — accepting requests.")
    yield

    logger.info("Shutting down server...")
    _pipeline = None


def get_pipeline() -> CaptionPipeline:
    """Dependency returning the process-wide captioning pipeline."""
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return _pipeline


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Streaming Caption Server",
    description=(
        "Captions images with a pretrained BLIP model, either in one shot "
        "over HTTP or incrementally over a websocket as tokens are generated."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/", response_class=HTMLResponse)
def show_form():
    """Serve a minimal upload form that posts to /caption."""
    return _UPLOAD_FORM


@app.get("/health", response_model=HealthResponse)
def health_check():
    """Report liveness and the configured model."""
    config = get_config()
    uptime = time.time() - _start_time if _start_time > 0 else 0.0
    return HealthResponse(
        status="ok" if _pipeline is not None else "starting",
        model_id=config.model_id,
        model_revision=config.model_revision,
        model_variant=config.model_variant,
        device=config.device,
        uptime_seconds=round(uptime, 2),
    )


def _check_body_size(request: Request, limit: int) -> None:
    """Reject a declared Content-Length over ``limit`` before reading the body."""
    content_length = request.headers.get("content-length")
    if content_length is None:
        return
    try:
        size = int(content_length)
    except ValueError:
        logger.warning("Invalid Content-Length %r", content_length)
        raise HTTPException(status_code=500, detail="Caption failed")
    if size > limit:
        raise HTTPException(
            status_code=413,
            detail=f"Request body of {size} bytes exceeds the {limit} byte limit",
        )


def _limit_receive(receive: Receive, limit: int) -> Receive:
    """
    Wrap an ASGI ``receive`` so the body fails with 413 once more than
    ``limit`` bytes have arrived, whether or not Content-Length was sent.
    """
    received = 0

    async def receive_with_limit() -> Message:
        nonlocal received
        message = await receive()
        if message["type"] == "http.request":
            received += len(message.get("body", b""))
            if received > limit:
                raise HTTPException(
                    status_code=413,
                    detail=f"Request body exceeds the {limit} byte limit",
                )
        return message

    return receive_with_limit


async def _read_first_file(request: Request) -> Tuple[str, UploadFile, bytes]:
    """Parse the form and return (field name, upload, bytes) of the first file field."""
    try:
        form = await request.form()
    except HTTPException:
        raise
    except Exception as exc:
        logger.warning("Failed to parse caption form: %s", exc)
        raise HTTPException(status_code=500, detail="Caption failed") from exc

    field = next(
        ((name, value) for name, value in form.multi_items() if isinstance(value, UploadFile)),
        None,
    )
    if field is None:
        logger.warning("Caption request without a file field")
        raise HTTPException(status_code=500, detail="Caption failed")

    name, upload = field
    return name, upload, await upload.read()


@app.post("/caption", status_code=201, response_class=PlainTextResponse)
async def create_caption(
    request: Request,
    pipeline: CaptionPipeline = Depends(get_pipeline),
):
    """
    Caption the first file field of a multipart form.

    Returns the full caption as the response body with status 201. A body
    over the configured limit is rejected with 413; any other failure
    (missing file, undecodable image, model or inference failure) is
    reported as a generic 500.
    """
    limit = get_config().max_body_bytes
    _check_body_size(request, limit)

    upload_request = Request(request.scope, _limit_receive(request.receive, limit))
    try:
        name, upload, data = await _read_first_file(upload_request)
    finally:
        await upload_request.close()

    logger.info(
        "Length of `%s` (`%s`: `%s`) is %d bytes",
        name, upload.filename, upload.content_type, len(data),
    )

    inference_start = time.time()
    try:
        caption = await run_in_threadpool(pipeline.caption, data)
    except CaptionError as exc:
        logger.warning("Caption for `%s` failed: %s", upload.filename, exc)
        raise HTTPException(status_code=500, detail="Caption failed") from exc

    logger.info(
        "`%s` -> caption (%.1fms): %s",
        upload.filename, (time.time() - inference_start) * 1000.0, caption,
    )
    return PlainTextResponse(caption, status_code=201)


@app.websocket("/ws")
async def caption_stream(
    websocket: WebSocket,
    pipeline: CaptionPipeline = Depends(get_pipeline),
):
    """Run one streaming caption session for the connecting client."""
    user_agent = websocket.headers.get("user-agent", "Unknown browser")
    client = websocket.client
    peer = f"{client.host}:{client.port}" if client else "unknown"
    logger.info("`%s` at %s connected.", user_agent, peer)

    session = CaptionSession(StarletteTransport(websocket), pipeline, peer)
    await session.run()
