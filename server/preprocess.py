# =============================================================================
# Streaming Caption Server - Image Preprocessor
# =============================================================================
# Decodes arbitrary compressed image bytes (format auto-detected by Pillow)
# into the fixed-shape tensor the BLIP vision encoder expects:
#   crop-to-fill 384x384 (bilinear) -> RGB -> [0, 1] -> per-channel
#   normalization with the OpenAI CLIP mean/std, channel-first float32.
# =============================================================================

import io
import logging

import numpy as np
import torch
from PIL import Image, ImageOps

from server.errors import DecodeError

logger = logging.getLogger(__name__)

IMAGE_SIZE = 384

# OpenAI CLIP normalization constants, shaped (3, 1, 1) for broadcasting
IMAGE_MEAN = np.array([0.48145466, 0.4578275, 0.40821073], dtype=np.float32).reshape(3, 1, 1)
IMAGE_STD = np.array([0.26862954, 0.2613026, 0.2757771], dtype=np.float32).reshape(3, 1, 1)


def load_image(data: bytes) -> Image.Image:
    """
    Decode image bytes into a fully loaded RGB PIL image.

    Args:
        data: Raw bytes in any encoding Pillow can identify.

    Returns:
        PIL.Image.Image in RGB mode.

    Raises:
        DecodeError: If the bytes are empty, unidentifiable, or corrupt.
    """
    if not data:
        raise DecodeError("Empty image payload")
    try:
        image = Image.open(io.BytesIO(data))
        # Force a full decode here so truncated files fail now, not later
        image.load()
        return image.convert("RGB")
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Failed to decode image ({len(data)} bytes): {exc}") from exc


def preprocess(data: bytes, size: int = IMAGE_SIZE) -> torch.Tensor:
    """
    Turn raw image bytes into a normalized (3, size, size) float32 tensor.

    The image is scaled to cover the target square and the excess is
    center-cropped (crop-to-fill, not letterbox), so the output shape does
    not depend on the source resolution or aspect ratio.

    Args:
        data: Raw image bytes.
        size: Side length of the square output.

    Returns:
        torch.Tensor of shape (3, size, size) with dtype float32.

    Raises:
        DecodeError: If the bytes cannot be decoded as an image.
    """
    image = load_image(data)
    source_size = image.size

    image = ImageOps.fit(image, (size, size), method=Image.BILINEAR)

    # (H, W, 3) uint8 -> (3, H, W) float32 in [0, 1]
    pixels = np.asarray(image, dtype=np.float32).transpose(2, 0, 1) / 255.0
    pixels = (pixels - IMAGE_MEAN) / IMAGE_STD

    tensor = torch.from_numpy(np.ascontiguousarray(pixels, dtype=np.float32))

    logger.debug(
        "Preprocessed image %sx%s -> tensor shape=%s",
        source_size[0], source_size[1], tuple(tensor.shape),
    )
    return tensor
