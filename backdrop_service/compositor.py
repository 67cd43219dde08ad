"""Deterministic merge of foreground raster, mask and background."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import cv2
import numpy as np

from .background import ImageBackground, ResolvedBackground, SolidColor, Transparent
from .errors import CompositingError, ErrorKind
from .imaging import SegmentationMask, Tier, WorkingRaster, encode_png

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.5


@dataclass
class CompositeResult:
    pixels: np.ndarray = field(repr=False)  # (H, W, 4) uint8
    png: bytes = field(repr=False)
    tier: Optional[Tier] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


def render_background_layer(background: ResolvedBackground, width: int, height: int) -> np.ndarray:
    spec = background.spec
    if isinstance(spec, Transparent):
        return np.zeros((height, width, 4), dtype=np.uint8)
    if isinstance(spec, SolidColor):
        layer = np.empty((height, width, 4), dtype=np.uint8)
        layer[..., :3] = spec.color
        layer[..., 3] = 255
        return layer
    if isinstance(spec, ImageBackground):
        if background.image is None:
            raise CompositingError(ErrorKind.INVALID_BACKGROUND_ASSET, "Background image was not resolved")
        image = background.image
        if image.shape[:2] != (height, width):
            # Stretched, not cropped.
            image = cv2.resize(image, (width, height), interpolation=cv2.INTER_LINEAR)
        return np.ascontiguousarray(image, dtype=np.uint8)
    raise TypeError(f"Unknown background spec: {spec!r}")


def composite_pixels(
    raster: WorkingRaster,
    mask: SegmentationMask,
    background: ResolvedBackground,
    threshold: float = DEFAULT_THRESHOLD,
) -> np.ndarray:
    """
    Alpha-gate the raster over the background layer.

    Pixels with `mask >= threshold` keep the original RGBA value (alpha
    included); every other pixel shows the background.
    """
    if mask.values.shape != (raster.height, raster.width):
        raise CompositingError(
            ErrorKind.DIMENSION_MISMATCH,
            f"Mask is {mask.size[0]}x{mask.size[1]} but raster is {raster.width}x{raster.height}",
        )
    layer = render_background_layer(background, raster.width, raster.height)
    gate = mask.foreground(threshold)
    return np.where(gate[..., None], raster.pixels, layer).astype(np.uint8)


def composite(
    raster: WorkingRaster,
    mask: SegmentationMask,
    background: ResolvedBackground,
    threshold: float = DEFAULT_THRESHOLD,
) -> CompositeResult:
    pixels = composite_pixels(raster, mask, background, threshold)
    logger.debug(
        "composited %dx%d background=%s tier=%s",
        raster.width,
        raster.height,
        background.spec.kind,
        mask.tier.value,
    )
    return CompositeResult(pixels=pixels, png=encode_png(pixels), tier=mask.tier)
