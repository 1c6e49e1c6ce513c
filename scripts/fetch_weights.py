# =============================================================================
# Streaming Caption Server - Weight Pre-download Script
# =============================================================================
# One-time utility that populates the local huggingface_hub cache with the
# BLIP weights, config and tokenizer the server is configured to use, and
# optionally loads them once to verify they parse. Run it before starting the
# server so the first caption request does not pay the download.
#
# Usage:
#   python3 scripts/fetch_weights.py [--verify]
# =============================================================================

import argparse
import os
import time

from config import get_config
from server.hub import fetch_model_files, fetch_tokenizer_file


def fetch_weights(verify: bool = False) -> None:
    """
    Download the configured model snapshot and tokenizer into the cache.

    Args:
        verify: Also load the model and tokenizer once to check they parse.
    """
    config = get_config()

    print(f"Fetching {config.model_id}@{config.model_revision} ...")
    t0 = time.time()
    files = fetch_model_files(config.model_id, config.model_revision, cache_dir=config.cache_dir)
    print(
        f"Weights: {files.weights_path} "
        f"({os.path.getsize(files.weights_path) / 1024 / 1024:.1f} MB)"
    )
    print(f"Config : {files.config_path}")

    tokenizer_path = fetch_tokenizer_file(
        config.model_id, revision=config.tokenizer_revision, cache_dir=config.cache_dir
    )
    print(f"Tokenizer: {tokenizer_path}")
    print(f"Fetched in {time.time() - t0:.1f}s")

    if verify:
        from server.models import ModelVariant, load_model, load_tokenizer

        handle = load_model(files, ModelVariant.parse(config.model_variant), device="cpu")
        tokenizer = load_tokenizer(tokenizer_path)
        print(
            f"Verified: variant={handle.variant.value}, "
            f"vocab={tokenizer.get_vocab_size()} tokens"
        )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Pre-download caption model files")
    parser.add_argument("--verify", action="store_true", help="Load the files once after fetching")
    args = parser.parse_args()
    fetch_weights(verify=args.verify)
