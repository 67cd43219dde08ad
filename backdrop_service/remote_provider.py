"""
Remote segmentation tier.

Posts the untouched upload to a remove.bg compatible endpoint and turns the
returned cutout into a mask aligned with the working raster. Every failure
is classified so the orchestrator can fall back while keeping the reason for
the final message.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

import cv2
import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from . import config
from .errors import ErrorKind, ProviderError
from .imaging import RGB, SegmentationMask, SourceImage, Tier, open_image
from .providers import ProviderOutcome, guard_foreground

logger = logging.getLogger(__name__)

AUTH_STATUSES = {401, 403}
QUOTA_STATUSES = {402, 429}
# Rounding slack, in target pixels, when matching the cutout to the working raster.
ASPECT_TOLERANCE_PX = 2


def color_to_hex(color: RGB) -> str:
    return "{:02x}{:02x}{:02x}".format(*color)


def _error_title(resp: requests.Response) -> Optional[str]:
    try:
        payload = resp.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    errors = payload.get("errors") or []
    if errors and isinstance(errors[0], dict):
        return errors[0].get("title")
    return None


def aspect_matches(size: Tuple[int, int], target_size: Tuple[int, int], tolerance: float = ASPECT_TOLERANCE_PX) -> bool:
    """True when scaling `size` onto `target_size` (both width, height) is uniform up to rounding."""
    width, height = size
    target_w, target_h = target_size
    if min(width, height, target_w, target_h) <= 0:
        return False
    return (
        abs(height * target_w / width - target_h) <= tolerance
        and abs(width * target_h / height - target_w) <= tolerance
    )


def classify_status(status_code: int) -> ErrorKind:
    if status_code in AUTH_STATUSES:
        return ErrorKind.AUTH_ERROR
    if status_code in QUOTA_STATUSES:
        return ErrorKind.QUOTA_ERROR
    return ErrorKind.TRANSIENT_ERROR


class RemoteSegmentationProvider:
    tier = Tier.REMOTE

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._settings = settings or config.get_settings()
        self._session = session

    def _post(self, source: SourceImage, color_hint: Optional[RGB]) -> bytes:
        settings = self._settings
        if not settings.remove_bg_api_key:
            raise ProviderError(ErrorKind.AUTH_ERROR, "No API key configured for the remote service")

        data = {"size": "auto", "format": "png"}
        if color_hint is not None:
            data["bg_color"] = color_to_hex(color_hint)
        files = {"image_file": (source.filename or "image", source.data, source.mime_type)}
        http = self._session or requests
        try:
            resp = http.post(
                settings.remote_endpoint,
                headers={"X-Api-Key": settings.remove_bg_api_key},
                files=files,
                data=data,
                timeout=(settings.remote_connect_timeout_seconds, settings.remote_timeout_seconds),
            )
        except requests.Timeout as exc:
            raise ProviderError(ErrorKind.TRANSIENT_ERROR, "Remote service timed out") from exc
        except requests.RequestException as exc:
            raise ProviderError(ErrorKind.TRANSIENT_ERROR, f"Remote service unreachable: {exc}") from exc

        if not resp.ok:
            kind = classify_status(resp.status_code)
            title = _error_title(resp)
            message = f"API error: {title}" if title else f"Remote service returned HTTP {resp.status_code}"
            raise ProviderError(kind, message)
        if not resp.content:
            raise ProviderError(ErrorKind.INVALID_RESPONSE, "Remote service returned an empty body")
        return resp.content

    def mask_from_cutout(
        self,
        content: bytes,
        target_size: Tuple[int, int],
        color_hint: Optional[RGB] = None,
    ) -> SegmentationMask:
        """Recover a [0, 1] mask of `target_size` (width, height) from the service output."""
        try:
            rgba = np.asarray(open_image(content).convert("RGBA"), dtype=np.uint8)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise ProviderError(ErrorKind.INVALID_RESPONSE, "Remote service returned undecodable image data") from exc

        alpha = rgba[..., 3]
        keyed_color = None
        if alpha.min() < 255:
            values = alpha.astype(np.float32) / 255.0
        elif color_hint is not None:
            # Output already flattened onto the hinted color: key it back out.
            diff = np.abs(rgba[..., :3].astype(np.int16) - np.array(color_hint, dtype=np.int16))
            background = diff.max(axis=-1) <= self._settings.color_key_tolerance
            values = np.where(background, 0.0, 1.0).astype(np.float32)
            keyed_color = tuple(color_hint)
        else:
            values = np.ones(alpha.shape, dtype=np.float32)

        cutout_size = (values.shape[1], values.shape[0])
        if cutout_size != tuple(target_size):
            if not aspect_matches(cutout_size, target_size):
                raise ProviderError(
                    ErrorKind.INVALID_RESPONSE,
                    "Remote cutout is {}x{} and does not match the {}x{} image".format(*cutout_size, *target_size),
                )
            values = cv2.resize(values, tuple(target_size), interpolation=cv2.INTER_LINEAR)
        return SegmentationMask(values=values, tier=self.tier, keyed_color=keyed_color)

    async def segment(
        self,
        source: SourceImage,
        target_size: Tuple[int, int],
        color_hint: Optional[RGB] = None,
    ) -> ProviderOutcome:
        settings = self._settings
        try:
            content = await asyncio.wait_for(
                asyncio.to_thread(self._post, source, color_hint),
                timeout=settings.remote_timeout_seconds,
            )
            mask = self.mask_from_cutout(content, target_size, color_hint)
            guard_foreground(mask, settings.mask_threshold)
        except asyncio.TimeoutError:
            logger.warning("remote segmentation exceeded %.1fs", settings.remote_timeout_seconds)
            return ProviderOutcome.failure(self.tier, ErrorKind.TRANSIENT_ERROR, "Remote service timed out")
        except ProviderError as err:
            logger.warning("remote segmentation failed kind=%s: %s", err.kind.value, err.message)
            return ProviderOutcome.from_error(self.tier, err)
        return ProviderOutcome.success(self.tier, mask)
