# =============================================================================
# Streaming Caption Server - Server Entry Point
# =============================================================================
# CLI entry point for starting the FastAPI server. Model identity and variant
# are fixed in config.py; only the bind address and logging are tunable here.
# =============================================================================

import argparse
import logging

import uvicorn

from config import get_config


def main():
    """Parse CLI arguments, apply overrides, and start the server."""
    parser = argparse.ArgumentParser(
        description="Streaming Caption Server — BLIP captions over HTTP and websocket",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Server bind address")
    parser.add_argument("--port", type=int, default=None, help="Server bind port")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level")
    args = parser.parse_args()

    config = get_config()

    if args.host is not None:
        config.server_host = args.host
    if args.port is not None:
        config.server_port = args.port
    if args.log_level is not None:
        config.log_level = args.log_level

    config.server_url = f"http://{config.server_host}:{config.server_port}"

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    print("\n" + "=" * 60)
    print("  Streaming Caption Server")
    print("=" * 60)
    print(f"  Model      : {config.model_id}")
    print(f"  Revision   : {config.model_revision}")
    print(f"  Variant    : {config.model_variant}")
    print(f"  Device     : {config.device}")
    print(f"  Listening  : {config.server_host}:{config.server_port}")
    print(f"  Streaming  : ws://{config.server_host}:{config.server_port}/ws")
    print("=" * 60 + "\n")

    uvicorn.run(
        "server.app:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
        ws_ping_interval=config.ws_ping_interval,
        ws_ping_timeout=config.ws_ping_timeout,
    )


if __name__ == "__main__":
    main()
