# =============================================================================
# Streaming Caption Server - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing the tunable parameters for
# both the caption server and the client. Operational parameters are
# overridable via environment variables with the CAPTION_ prefix
# (e.g., CAPTION_SERVER_PORT=8080). Model identity, variant and sampling
# parameters are fixed here and are not exposed as overrides.
# =============================================================================

import os
from dataclasses import dataclass, field
from typing import Optional

import torch


def _detect_device() -> str:
    """
    Auto-detect the best available compute device.

    Returns:
        str: "cuda" on NVIDIA GPUs, "mps" on Apple Silicon, "cpu" as fallback.
    """
    if torch.cuda.is_available():
        return "cuda"
    elif torch.backends.mps.is_available():
        return "mps"
    return "cpu"


@dataclass
class Config:
    """
    Centralized configuration for the Streaming Caption Server.

    Fields listed in ``_apply_env_overrides`` can be overridden via
    environment variables prefixed with CAPTION_.
    """

    # -- Networking --
    server_host: str = "0.0.0.0"
    server_port: int = 3030
    max_body_bytes: int = 250 * 1024 * 1024  # 250 MiB
    ws_ping_interval: float = 20.0
    ws_ping_timeout: float = 20.0

    # -- Model repository --
    model_id: str = "Salesforce/blip-image-captioning-large"
    model_revision: str = "refs/pr/18"
    tokenizer_revision: str = "main"
    model_variant: str = "full"  # "full" | "quantized"
    cache_dir: Optional[str] = None

    # -- Decoding --
    bos_token_id: int = 30522
    sep_token_id: int = 102
    max_steps: int = 1000
    seed: int = 1337
    temperature: Optional[float] = None
    top_p: Optional[float] = None

    # -- Image preprocessing --
    image_size: int = 384

    # -- Compute --
    device: str = field(default_factory=_detect_device)

    # -- Logging --
    log_level: str = "info"

    # -- Derived (computed post-init) --
    server_url: str = field(init=False)

    def __post_init__(self):
        """Apply environment variable overrides and compute derived fields."""
        self._apply_env_overrides()
        self.server_url = f"http://{self.server_host}:{self.server_port}"

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for CAPTION_<FIELD_NAME_UPPERCASE> environment variables and
        applies them with appropriate type conversion.
        """
        field_types = {
            "server_host": str,
            "server_port": int,
            "max_body_bytes": int,
            "ws_ping_interval": float,
            "ws_ping_timeout": float,
            "cache_dir": str,
            "device": str,
            "log_level": str,
        }
        for field_name, field_type in field_types.items():
            env_key = f"CAPTION_{field_name.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
