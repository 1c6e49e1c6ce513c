# =============================================================================
# Streaming Caption Server - Model Repository Access
# =============================================================================
# Thin wrapper around huggingface_hub that resolves a (model id, revision)
# pair into local paths for the weights blob, the model config and the
# tokenizer vocabulary. Downloads are cached by huggingface_hub; a warm cache
# performs no network I/O beyond revision resolution.
# =============================================================================

import logging
import os
from dataclasses import dataclass
from typing import Optional

from huggingface_hub import hf_hub_download

from server.errors import TokenizerLoadError, WeightLoadError

logger = logging.getLogger(__name__)

WEIGHTS_FILENAME = "model.safetensors"
CONFIG_FILENAME = "config.json"
TOKENIZER_FILENAME = "tokenizer.json"


@dataclass(frozen=True)
class ModelFiles:
    """
    Local paths for one model snapshot.

    Attributes:
        weights_path: Path to the safetensors weights blob.
        config_path:  Path to the model's config.json.
    """

    weights_path: str
    config_path: str

    @property
    def snapshot_dir(self) -> str:
        """Directory holding the snapshot (weights and config live side by side)."""
        return os.path.dirname(self.weights_path)


def fetch_model_files(
    model_id: str,
    revision: str,
    cache_dir: Optional[str] = None,
) -> ModelFiles:
    """
    Fetch (or reuse from cache) the weights and config for a model revision.

    Args:
        model_id:  Hub repository id (e.g., "Salesforce/blip-image-captioning-large").
        revision:  Branch, tag, commit or PR ref (e.g., "refs/pr/18").
        cache_dir: Optional override for the huggingface_hub cache location.

    Returns:
        ModelFiles with local paths.

    Raises:
        WeightLoadError: If either file cannot be fetched.
    """
    try:
        weights_path = hf_hub_download(
            repo_id=model_id,
            filename=WEIGHTS_FILENAME,
            revision=revision,
            cache_dir=cache_dir,
        )
        config_path = hf_hub_download(
            repo_id=model_id,
            filename=CONFIG_FILENAME,
            revision=revision,
            cache_dir=cache_dir,
        )
    except Exception as exc:
        raise WeightLoadError(
            f"Failed to fetch weights for {model_id}@{revision}: {exc}"
        ) from exc

    logger.debug("Model files for %s@%s: %s", model_id, revision, weights_path)
    return ModelFiles(weights_path=weights_path, config_path=config_path)


def fetch_tokenizer_file(
    model_id: str,
    revision: str = "main",
    cache_dir: Optional[str] = None,
) -> str:
    """
    Fetch (or reuse from cache) the tokenizer.json vocabulary for a model.

    Raises:
        TokenizerLoadError: If the file cannot be fetched.
    """
    try:
        path = hf_hub_download(
            repo_id=model_id,
            filename=TOKENIZER_FILENAME,
            revision=revision,
            cache_dir=cache_dir,
        )
    except Exception as exc:
        raise TokenizerLoadError(
            f"Failed to fetch tokenizer for {model_id}@{revision}: {exc}"
        ) from exc

    logger.debug("Tokenizer file for %s@%s: %s", model_id, revision, path)
    return path
