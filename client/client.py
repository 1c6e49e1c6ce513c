# =============================================================================
# Streaming Caption Server - Caption HTTP Client
# =============================================================================
# Provides the CaptionClient class responsible for uploading images to the
# one-shot /caption endpoint as multipart form data and for waiting on the
# server's /health endpoint.
# =============================================================================

import logging
import os
import time
from typing import Optional, Union

import requests

from shared.schemas import HealthResponse

logger = logging.getLogger(__name__)


class CaptionClient:
    """
    HTTP client for the caption server.

    Args:
        server_url: Base URL of the server (e.g., "http://127.0.0.1:3030").
        timeout:    Seconds to wait for a caption response. Each request loads
                    the model afresh, so this is generous by default.
    """

    def __init__(self, server_url: str, timeout: float = 600.0):
        self._server_url = server_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()

    def caption(
        self,
        image: Union[str, bytes],
        filename: Optional[str] = None,
        content_type: str = "application/octet-stream",
    ) -> str:
        """
        Upload one image and return its caption.

        Args:
            image:        A file path or the raw image bytes.
            filename:     Name reported in the form field; defaults to the
                          path's basename or "image".
            content_type: MIME type reported for the file field.

        Returns:
            The caption text.

        Raises:
            requests.exceptions.RequestException: On connection failure or a
                non-2xx response.
        """
        if isinstance(image, str):
            filename = filename or os.path.basename(image)
            with open(image, "rb") as f:
                data = f.read()
        else:
            data = image
            filename = filename or "image"

        url = f"{self._server_url}/caption"
        start = time.time()
        response = self._session.post(
            url,
            files={"file": (filename, data, content_type)},
            timeout=self._timeout,
        )
        response.raise_for_status()

        logger.info(
            "Captioned %s (%d KB) in %.1fs",
            filename, len(data) // 1024, time.time() - start,
        )
        return response.text

    def health(self) -> HealthResponse:
        """Fetch and validate the server's /health payload."""
        response = self._session.get(f"{self._server_url}/health", timeout=5)
        response.raise_for_status()
        return HealthResponse.model_validate(response.json())

    def wait_for_server(self, timeout: int = 60, poll_interval: float = 2.0) -> bool:
        """
        Block until the server's /health endpoint reports "ok".

        Args:
            timeout:       Maximum seconds to wait for the server.
            poll_interval: Seconds between health check polls.

        Returns:
            True if the server is ready, False if timeout expired.
        """
        start = time.time()
        logger.info("Waiting for server at %s (timeout=%ds)...", self._server_url, timeout)

        while (time.time() - start) < timeout:
            try:
                health = self.health()
                if health.status == "ok":
                    logger.info(
                        "Server is ready (%s, variant=%s).",
                        health.model_id, health.model_variant,
                    )
                    return True
                logger.info("Server responded with status %s...", health.status)
            except requests.exceptions.ConnectionError:
                logger.debug("Server not reachable yet...")
            except requests.exceptions.RequestException:
                logger.debug("Health check error", exc_info=True)

            time.sleep(poll_interval)

        logger.error("Timed out waiting for server after %ds.", timeout)
        return False
