"""Test doubles for providers and the local model."""

from __future__ import annotations

import threading
import time
from io import BytesIO
from typing import Callable, List, Optional, Tuple

import numpy as np
import torch
from PIL import Image

from backdrop_service.errors import ErrorKind
from backdrop_service.imaging import SegmentationMask, Tier
from backdrop_service.providers import ProviderOutcome


def make_image_bytes(
    width: int = 64,
    height: int = 48,
    color=(200, 30, 30),
    fmt: str = "PNG",
    mode: str = "RGB",
) -> bytes:
    buf = BytesIO()
    Image.new(mode, (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


def make_cutout_bytes(alpha: np.ndarray, color=(10, 20, 30)) -> bytes:
    h, w = alpha.shape
    rgba = np.zeros((h, w, 4), dtype=np.uint8)
    rgba[..., :3] = color
    rgba[..., 3] = alpha
    buf = BytesIO()
    Image.fromarray(rgba).save(buf, format="PNG")
    return buf.getvalue()


def left_half_mask(width: int, height: int) -> np.ndarray:
    values = np.zeros((height, width), dtype=np.float32)
    values[:, : width // 2] = 1.0
    return values


class FakeRemote:
    tier = Tier.REMOTE

    def __init__(
        self,
        kind: Optional[ErrorKind] = None,
        mask_factory: Optional[Callable[[int, int], np.ndarray]] = None,
        on_call: Optional[Callable[[], None]] = None,
        keyed_color: Optional[tuple] = None,
    ) -> None:
        self.kind = kind
        self.keyed_color = keyed_color
        self.mask_factory = mask_factory or (lambda w, h: np.ones((h, w), dtype=np.float32))
        self.on_call = on_call
        self.calls: List[Tuple[Tuple[int, int], Optional[tuple]]] = []
        self.events: Optional[List[str]] = None

    async def segment(self, source, target_size, color_hint=None) -> ProviderOutcome:
        self.calls.append((tuple(target_size), color_hint))
        if self.events is not None:
            self.events.append("remote:start")
        if self.on_call is not None:
            self.on_call()
        if self.events is not None:
            self.events.append("remote:end")
        if self.kind is not None:
            return ProviderOutcome.failure(self.tier, self.kind)
        w, h = target_size
        mask = SegmentationMask(self.mask_factory(w, h), tier=self.tier, keyed_color=self.keyed_color)
        return ProviderOutcome.success(self.tier, mask)


class FakeLocal:
    tier = Tier.LOCAL

    def __init__(
        self,
        is_ready: bool = True,
        kind: Optional[ErrorKind] = None,
        mask_factory: Optional[Callable[[int, int], np.ndarray]] = None,
    ) -> None:
        self.is_ready = is_ready
        self.kind = kind
        self.mask_factory = mask_factory or (lambda w, h: np.ones((h, w), dtype=np.float32))
        self.calls = 0
        self.events: Optional[List[str]] = None

    def ready(self) -> bool:
        return self.is_ready

    async def segment(self, raster) -> ProviderOutcome:
        self.calls += 1
        if self.events is not None:
            self.events.append("local:start")
        if self.kind is not None:
            return ProviderOutcome.failure(self.tier, self.kind)
        return ProviderOutcome.success(
            self.tier, SegmentationMask(self.mask_factory(raster.width, raster.height), tier=self.tier)
        )


class ConstantMatte(torch.nn.Module):
    """Matting model stand-in that predicts the same alpha everywhere."""

    def __init__(self, value: float) -> None:
        super().__init__()
        self.value = value

    def forward(self, img: torch.Tensor, inference: bool = True):
        b, _, h, w = img.shape
        matte = torch.full((b, 1, h, w), float(self.value))
        return None, None, matte


class CenterBoxMatte(torch.nn.Module):
    """Foreground is the central half of the frame; returns a bare matte tensor."""

    def forward(self, img: torch.Tensor) -> torch.Tensor:
        b, _, h, w = img.shape
        matte = torch.zeros((b, 1, h, w))
        matte[:, :, h // 4 : 3 * h // 4, w // 4 : 3 * w // 4] = 1.0
        return matte


class ExplodingModel(torch.nn.Module):
    def forward(self, img: torch.Tensor, inference: bool = True):
        raise RuntimeError("CUDA out of memory")


class SlowMatte(torch.nn.Module):
    """Full-frame matte that takes a while and records overlapping calls."""

    def __init__(self, delay: float = 0.05) -> None:
        super().__init__()
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.calls = 0
        self.entered = threading.Event()
        self.release = threading.Event()
        self.release.set()
        self.events: List[str] = []
        self._counter = threading.Lock()

    def forward(self, img: torch.Tensor, inference: bool = True):
        with self._counter:
            self.active += 1
            self.calls += 1
            self.max_active = max(self.max_active, self.active)
            self.events.append("forward:start")
        self.entered.set()
        self.release.wait(5)
        time.sleep(self.delay)
        b, _, h, w = img.shape
        matte = torch.ones((b, 1, h, w))
        with self._counter:
            self.active -= 1
            self.events.append("forward:end")
        return None, None, matte
