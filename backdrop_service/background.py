"""
Background variants and their validation.

A `BackgroundSpec` is one of `Transparent`, `SolidColor` or `ImageBackground`.
`resolve_background` turns it into something the compositor can paint, and
refuses image assets that do not decode.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import CompositingError, ErrorKind
from .imaging import RGB, decode_rgba

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transparent:
    kind: str = field(default="transparent", init=False)


@dataclass(frozen=True)
class SolidColor:
    color: RGB
    kind: str = field(default="color", init=False)

    def __post_init__(self) -> None:
        if len(self.color) != 3 or not all(
            isinstance(c, (int, np.integer)) and 0 <= c <= 255 for c in self.color
        ):
            raise ValueError(f"Color must be an RGB triple of 0-255 ints, got {self.color!r}")
        object.__setattr__(self, "color", tuple(int(c) for c in self.color))

    @classmethod
    def from_hex(cls, value: str) -> "SolidColor":
        color = parse_hex_color(value)
        if color is None:
            raise ValueError(f"Invalid hex color: {value!r}")
        return cls(color)

    @property
    def hex(self) -> str:
        return "#{:02x}{:02x}{:02x}".format(*self.color)


@dataclass(frozen=True)
class ImageBackground:
    data: bytes = field(repr=False)
    kind: str = field(default="image", init=False)


BackgroundSpec = Union[Transparent, SolidColor, ImageBackground]


@dataclass(frozen=True)
class ResolvedBackground:
    spec: BackgroundSpec
    image: Optional[np.ndarray] = field(default=None, repr=False)  # (H, W, 4) uint8 for ImageBackground


def parse_hex_color(value: Optional[str]) -> Optional[RGB]:
    if not value:
        return None
    raw = value.strip()
    if raw.startswith("#"):
        raw = raw[1:]
    if len(raw) != 6:
        return None
    try:
        return (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16))
    except ValueError:
        return None


def resolve_background(spec: BackgroundSpec) -> ResolvedBackground:
    """
    Validate the active variant before compositing.

    Raises:
        CompositingError: INVALID_BACKGROUND_ASSET when an image background
            cannot be decoded.
    """
    if isinstance(spec, (Transparent, SolidColor)):
        return ResolvedBackground(spec=spec)
    if isinstance(spec, ImageBackground):
        if not spec.data:
            raise CompositingError(ErrorKind.INVALID_BACKGROUND_ASSET, "Background image is empty")
        try:
            pixels = decode_rgba(spec.data)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            logger.warning("background asset rejected: %s", exc)
            raise CompositingError(ErrorKind.INVALID_BACKGROUND_ASSET) from exc
        return ResolvedBackground(spec=spec, image=pixels)
    raise TypeError(f"Unknown background spec: {spec!r}")
