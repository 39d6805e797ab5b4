"""Image preprocessing pipeline.

Decodes uploaded bytes into RGB pixel arrays and turns them into the
normalized, batched tensor the classification model expects.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps

from imagescanner.errors import DecodeFailure

if TYPE_CHECKING:
    from numpy.typing import NDArray

MODEL_INPUT_SIZE: int = 224
NORMALIZATION_OFFSET: float = 127.5


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images whose width * height exceeds this.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        DecodeFailure: If the image cannot be decoded or exceeds size limits.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise DecodeFailure(f"Image is too large ({width}x{height} pixels)")
            img.load()
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
    except DecodeFailure:
        raise
    except Exception as exc:
        # Pillow plugins raise assorted types (SyntaxError, struct.error, ...) on corrupt data.
        raise DecodeFailure("Image could not be decoded") from exc

    return np.asarray(rgb, dtype=np.uint8)


def resize_nearest(image: NDArray[np.uint8], height: int, width: int) -> NDArray[np.uint8]:
    """Nearest-neighbour resize without corner alignment or half-pixel centres.

    Output pixel (y, x) samples source pixel (floor(y * H / height), floor(x * W / width)).
    """
    src_h, src_w = image.shape[:2]
    rows = np.minimum((np.arange(height) * src_h) // height, src_h - 1)
    cols = np.minimum((np.arange(width) * src_w) // width, src_w - 1)
    return image[rows[:, None], cols[None, :]]


def normalize(pixels: NDArray[np.generic]) -> NDArray[np.float32]:
    """Map channel values from [0, 255] to [-1, 1]."""
    values = pixels.astype(np.float32)
    return (values - NORMALIZATION_OFFSET) / NORMALIZATION_OFFSET


def preprocess_for_classification(image: NDArray[np.uint8], size: int = MODEL_INPUT_SIZE) -> NDArray[np.float32]:
    """Prepare an image for the classification model.

    Args:
        image: HxWx3 RGB uint8 array.
        size: Square spatial size the model expects.

    Returns:
        1 x size x size x 3 float32 tensor in [-1, 1].
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError(f"Expected an HxWx3 image, got shape {image.shape}")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise ValueError("Image has no pixels")

    resized = resize_nearest(image, size, size)
    return np.expand_dims(normalize(resized), axis=0)
