"""Image preprocessing pipeline.

Handles decoding, EXIF orientation, color space conversion, size validation,
cropping, and the optional op chain applied before a buffer is handed to the
model. The op chain is empty by default: the model's own input signature
decides resizing and normalization (see ``image_classifier``).
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from asclepius.errors import ImageDecodeError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

ImageSource = bytes | str | Path | BinaryIO


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def load_image(source: ImageSource, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode an image reference into an HxWx3 RGB uint8 array.

    Args:
        source: Raw file bytes, a filesystem path, or a binary file object.
        max_pixels: Reject images with more pixels than this.

    Raises:
        ImageDecodeError: If the source is empty, unreadable, or too large.
    """
    if isinstance(source, bytes | bytearray):
        if not source:
            raise ImageDecodeError("empty image")
        source = io.BytesIO(source)

    try:
        with Image.open(source) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise ImageDecodeError(f"image has {width * height} pixels, limit is {max_pixels}")
            transposed = ImageOps.exif_transpose(img)
            rgb = transposed.convert("RGB")
            pixels = np.asarray(rgb, dtype=np.uint8)
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"cannot decode image: {exc}") from exc

    if pixels.size == 0:
        raise ImageDecodeError("empty image")
    return pixels


def as_rgb_array(pixels: object) -> NDArray[np.uint8]:
    """Validate a decoded buffer and coerce it to HxWx3 uint8.

    Grayscale (HxW) buffers are expanded to three channels and RGBA buffers
    lose their alpha channel.

    Raises:
        ImageDecodeError: If the buffer is missing or not an image.
    """
    if pixels is None:
        raise ImageDecodeError("no pixel buffer")
    if isinstance(pixels, Image.Image):
        pixels = np.asarray(pixels.convert("RGB"))
    if not isinstance(pixels, np.ndarray):
        raise ImageDecodeError(f"unsupported pixel buffer type {type(pixels).__name__}")
    if pixels.dtype != np.uint8 or pixels.size == 0:
        raise ImageDecodeError(f"expected non-empty uint8 buffer, got {pixels.dtype} with shape {pixels.shape}")

    if pixels.ndim == 2:
        return np.stack([pixels] * 3, axis=-1)
    if pixels.ndim == 3 and pixels.shape[2] == 3:
        return pixels
    if pixels.ndim == 3 and pixels.shape[2] == 4:
        return np.ascontiguousarray(pixels[:, :, :3])
    raise ImageDecodeError(f"unsupported pixel buffer shape {pixels.shape}")


# ---------------------------------------------------------------------------
# Cropping
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CropBox:
    """Crop rectangle in relative coordinates (0.0-1.0)."""

    left: float = 0.0
    top: float = 0.0
    right: float = 1.0
    bottom: float = 1.0

    def __post_init__(self) -> None:
        for name in ("left", "top", "right", "bottom"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"crop {name} must be within [0, 1], got {value}")
        if self.left >= self.right or self.top >= self.bottom:
            raise ValueError("crop box must have positive width and height")


def crop_image(image: NDArray[np.uint8], box: CropBox) -> NDArray[np.uint8]:
    """Crop an HxWxC array to the given relative box (at least one pixel)."""
    height, width = image.shape[:2]
    x0 = min(int(round(box.left * width)), width - 1)
    y0 = min(int(round(box.top * height)), height - 1)
    x1 = max(int(round(box.right * width)), x0 + 1)
    y1 = max(int(round(box.bottom * height)), y0 + 1)
    logger.debug("Cropping %sx%s image to [%s:%s, %s:%s]", width, height, y0, y1, x0, x1)
    return np.ascontiguousarray(image[y0:y1, x0:x1])


# ---------------------------------------------------------------------------
# Op chain
# ---------------------------------------------------------------------------


class ImageOp(Protocol):
    """A single preprocessing step."""

    def __call__(self, image: NDArray[np.generic]) -> NDArray[np.generic]: ...


@dataclass(frozen=True)
class ResizeOp:
    """Bilinear resize. uint8 input stays uint8, float input keeps its dtype."""

    height: int
    width: int

    def __call__(self, image: NDArray[np.generic]) -> NDArray[np.generic]:
        if image.shape[:2] == (self.height, self.width):
            return image
        size = (self.width, self.height)
        if not np.issubdtype(image.dtype, np.floating):
            resized = Image.fromarray(np.asarray(image, dtype=np.uint8)).resize(size, Image.Resampling.BILINEAR)
            return np.asarray(resized, dtype=np.uint8)
        # A 2-D float32 array maps to Pillow's single-channel "F" mode.
        channels = [
            np.asarray(Image.fromarray(image[..., c].astype(np.float32)).resize(size, Image.Resampling.BILINEAR))
            for c in range(image.shape[2])
        ]
        return np.stack(channels, axis=-1).astype(image.dtype)


@dataclass(frozen=True)
class NormalizeOp:
    """``(x - mean) / std`` producing float32."""

    mean: float = 0.0
    std: float = 255.0

    def __call__(self, image: NDArray[np.generic]) -> NDArray[np.generic]:
        return ((image.astype(np.float32) - self.mean) / self.std).astype(np.float32)


class ImageProcessor:
    """Applies a fixed sequence of ops. With no ops it is the identity."""

    def __init__(self, ops: Iterable[ImageOp] = ()) -> None:
        self._ops = tuple(ops)

    @property
    def ops(self) -> tuple[ImageOp, ...]:
        return self._ops

    def process(self, image: NDArray[np.generic]) -> NDArray[np.generic]:
        for op in self._ops:
            image = op(image)
        return image
