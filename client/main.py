# =============================================================================
# Streaming Caption Server - Client Entry Point
# =============================================================================
# Captions one or more image files through the server's one-shot endpoint and
# prints "<path>: <caption>" per file.
# =============================================================================

import argparse
import logging
import sys

import requests

from client.client import CaptionClient
from config import get_config

logger = logging.getLogger(__name__)


def main():
    """CLI entry point for the caption client."""
    config = get_config()

    parser = argparse.ArgumentParser(
        description="Streaming Caption Server — caption image files",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("images", nargs="+", help="Image files to caption")
    parser.add_argument(
        "--server-url", type=str, default=f"http://127.0.0.1:{config.server_port}",
        help="Server base URL",
    )
    parser.add_argument(
        "--wait", type=int, default=0,
        help="Seconds to wait for the server to become healthy first",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    client = CaptionClient(server_url=args.server_url)

    if args.wait > 0 and not client.wait_for_server(timeout=args.wait):
        logger.error("Server not available. Exiting.")
        sys.exit(1)

    failures = 0
    for path in args.images:
        try:
            print(f"{path}: {client.caption(path)}")
        except (OSError, requests.exceptions.RequestException):
            logger.exception("Failed to caption %s", path)
            failures += 1

    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
