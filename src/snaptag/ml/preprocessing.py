"""Image preprocessing: decoding and model input preparation.

Decoding handles EXIF orientation, color space conversion, and size
validation. Tensor preparation resizes to the model's input size and
applies per-channel normalization, producing an NCHW float32 batch of one.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from snaptag.ml.image_classifier import InferenceFailedError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


def decode_image(image_bytes: bytes, max_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        InferenceFailedError: If the image cannot be decoded or exceeds size limits.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if img.width * img.height > max_pixels:
                raise InferenceFailedError(f"Image too large: {img.width}x{img.height} exceeds {max_pixels} pixels")
            rgb = ImageOps.exif_transpose(img).convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise InferenceFailedError(f"decode error: {exc}") from exc
    return np.asarray(rgb, dtype=np.uint8)


def to_input_tensor(
    image: NDArray[np.uint8],
    size: tuple[int, int],
    mean: Sequence[float],
    std: Sequence[float],
) -> NDArray[np.float32]:
    """Resize and normalize an RGB image for a classification model.

    Args:
        image: HxWx3 RGB uint8 array.
        size: Target (width, height).
        mean: Per-channel mean in [0, 1] units.
        std: Per-channel standard deviation in [0, 1] units.

    Returns:
        1x3xHxW float32 tensor.
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise InferenceFailedError(f"Expected an HxWx3 RGB image, got shape {image.shape}")

    resized = Image.fromarray(image).resize(size, Image.Resampling.BILINEAR)
    pixels = np.asarray(resized, dtype=np.float32) / 255.0
    pixels = (pixels - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...])


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)
