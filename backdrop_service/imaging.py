"""
Image containers shared by every pipeline stage.

`SourceImage` is the immutable upload, `WorkingRaster` is the decoded and
downscaled RGBA substrate used for both inference and compositing, and
`SegmentationMask` is a per-pixel foreground score aligned with it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageOps

RGB = Tuple[int, int, int]


class Tier(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


@dataclass(frozen=True)
class SourceImage:
    data: bytes
    mime_type: str
    width: int
    height: int
    filename: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def open_image(data: bytes) -> Image.Image:
    """Decode bytes with EXIF orientation applied, first frame only for animations."""
    image = Image.open(BytesIO(data))
    image.load()
    return ImageOps.exif_transpose(image)


def decode_rgba(data: bytes) -> np.ndarray:
    return np.asarray(open_image(data).convert("RGBA"), dtype=np.uint8)


def encode_png(pixels: np.ndarray) -> bytes:
    buf = BytesIO()
    Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8)).save(buf, format="PNG")
    return buf.getvalue()


def compute_working_size(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Preserve aspect ratio while constraining both edges to `max_dimension`."""
    if width <= max_dimension and height <= max_dimension:
        return width, height
    ratio = min(max_dimension / width, max_dimension / height)
    return max(1, round(width * ratio)), max(1, round(height * ratio))


@dataclass
class WorkingRaster:
    pixels: np.ndarray  # (H, W, 4) uint8

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    @classmethod
    def from_source(cls, source: SourceImage, max_dimension: int) -> "WorkingRaster":
        image = open_image(source.data).convert("RGBA")
        new_size = compute_working_size(image.width, image.height, max_dimension)
        if new_size != image.size:
            image = image.resize(new_size, Image.BILINEAR)
        return cls(pixels=np.asarray(image, dtype=np.uint8).copy())


@dataclass
class SegmentationMask:
    values: np.ndarray  # (H, W) float32 in [0, 1], 1 = foreground
    tier: Tier
    # Set when the mask was recovered from a result the remote service had
    # already flattened onto this color.
    keyed_color: Optional[RGB] = None

    def __post_init__(self) -> None:
        self.values = np.clip(np.asarray(self.values, dtype=np.float32), 0.0, 1.0)

    @property
    def size(self) -> Tuple[int, int]:
        return int(self.values.shape[1]), int(self.values.shape[0])

    def foreground(self, threshold: float) -> np.ndarray:
        return self.values >= threshold

    def foreground_ratio(self, threshold: float) -> float:
        if self.values.size == 0:
            return 0.0
        return float(np.mean(self.foreground(threshold)))

    def has_foreground(self, threshold: float) -> bool:
        return bool(np.any(self.foreground(threshold)))
