"""
Local segmentation tier.

The working raster is normalized into the matting model's input space,
inferred on the shared model and the predicted matte is brought back to the
working raster resolution:
raster -> model tensor -> matte -> mask aligned with the raster.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Optional, Tuple

import numpy as np
import torch
import torch.nn.functional as F
from PIL import Image

from . import config
from .errors import ErrorKind, ProviderError
from .imaging import SegmentationMask, Tier, WorkingRaster
from .model_loader import ModelLifecycleManager
from .providers import ProviderOutcome, guard_foreground

logger = logging.getLogger(__name__)


def compute_model_input_dims(width: int, height: int, long_edge: int) -> Tuple[int, int]:
    """Scale the longest edge to `long_edge`, snapped to multiples of 32."""
    scale = long_edge / max(width, height)
    new_w = int(width * scale)
    new_h = int(height * scale)
    # Matting down/up sampling chains work best when dimensions are divisible by 32.
    new_w = max(32, math.ceil(new_w / 32) * 32)
    new_h = max(32, math.ceil(new_h / 32) * 32)
    return new_w, new_h


def raster_to_tensor(raster: WorkingRaster, long_edge: int, device: torch.device) -> torch.Tensor:
    """RGB in [-1, 1], NCHW, resized for the model."""
    image = Image.fromarray(np.ascontiguousarray(raster.rgb))
    dims = compute_model_input_dims(raster.width, raster.height, long_edge)
    if dims != image.size:
        image = image.resize(dims, Image.BILINEAR)
    im_np = np.asarray(image).astype("float32") / 255.0
    im_np = (im_np - 0.5) / 0.5
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW
    return torch.from_numpy(im_np).unsqueeze(0).to(device)


def _select_matte(output) -> torch.Tensor:
    # MODNet style exports return (semantic, detail, matte); plain exports return the matte.
    if isinstance(output, (tuple, list)):
        output = output[-1]
    if output.dim() == 3:
        output = output.unsqueeze(1)
    return output


def run_inference(
    model: torch.nn.Module,
    tensor: torch.Tensor,
    size: Tuple[int, int],
    inference_flag: bool = True,
) -> np.ndarray:
    """Run the model and return a (H, W) matte in [0, 1] for `size` (width, height)."""
    with torch.no_grad():
        output = model(tensor, True) if inference_flag else model(tensor)
        matte = _select_matte(output).float()
    matte = F.interpolate(matte, size=(size[1], size[0]), mode="bilinear", align_corners=False)
    alpha = matte[0, 0].detach().cpu().numpy()
    return np.clip(alpha, 0.0, 1.0)


class LocalSegmentationProvider:
    tier = Tier.LOCAL

    def __init__(
        self,
        manager: ModelLifecycleManager,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self._manager = manager
        self._settings = settings or config.get_settings()

    @property
    def manager(self) -> ModelLifecycleManager:
        return self._manager

    def ready(self) -> bool:
        return self._manager.ready()

    def _infer(self, raster: WorkingRaster) -> np.ndarray:
        model = self._manager.model
        tensor = raster_to_tensor(raster, self._settings.local_model_long_edge, self._manager.device)
        return run_inference(model, tensor, raster.size, self._settings.local_model_inference_flag)

    async def segment(self, raster: WorkingRaster) -> ProviderOutcome:
        if not self._manager.ready():
            return ProviderOutcome.failure(self.tier, ErrorKind.MODEL_UNAVAILABLE)

        try:
            async with self._manager.inference_lock:
                if not self._manager.ready():
                    raise ProviderError(ErrorKind.MODEL_UNAVAILABLE)
                try:
                    values = await asyncio.to_thread(self._infer, raster)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("local inference failed: %s", exc)
                    raise ProviderError(ErrorKind.INFERENCE_ERROR) from exc
            mask = guard_foreground(
                SegmentationMask(values=values, tier=self.tier),
                self._settings.mask_threshold,
            )
        except ProviderError as err:
            return ProviderOutcome.from_error(self.tier, err)

        logger.debug(
            "local segmentation foreground ratio=%.4f",
            mask.foreground_ratio(self._settings.mask_threshold),
        )
        return ProviderOutcome.success(self.tier, mask)
