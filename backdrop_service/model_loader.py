"""
Lifecycle of the local segmentation model.

The manager:
 - loads a TorchScript matting model from `LOCAL_MODEL_PATH` once per process,
 - starts loading eagerly so download/initialization hides behind other work,
 - stays in LOAD_FAILED for good if that single attempt fails,
 - serializes inference through one lock,
 - releases everything on `dispose()`.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import torch

from . import config

logger = logging.getLogger(__name__)

ModelLoader = Callable[[Path, torch.device], torch.nn.Module]


class ModelState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    LOAD_FAILED = "load_failed"


def select_device() -> torch.device:
    """Prefer CUDA -> Apple MPS -> CPU to support both GPU servers and local macOS dev."""
    if torch.cuda.is_available():
        return torch.device("cuda")
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def load_torchscript(model_path: Path, device: torch.device) -> torch.nn.Module:
    """Load a TorchScript model onto `device` in eval mode."""
    if not model_path.exists():
        raise FileNotFoundError(f"Segmentation model not found at {model_path}")
    model = torch.jit.load(str(model_path), map_location=device)
    model.eval()
    return model


class ModelLifecycleManager:
    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        loader: ModelLoader = load_torchscript,
        device: Optional[torch.device] = None,
    ) -> None:
        self._settings = settings or config.get_settings()
        self._loader = loader
        self._device = device or select_device()
        self._model: Optional[torch.nn.Module] = None
        self._state = ModelState.UNLOADED
        self._error: Optional[BaseException] = None
        self._load_task: Optional[asyncio.Task] = None
        self.inference_lock = asyncio.Lock()

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def model(self) -> torch.nn.Module:
        if self._state is not ModelState.READY or self._model is None:
            raise RuntimeError(f"Segmentation model is not ready (state={self._state.value})")
        return self._model

    def ready(self) -> bool:
        return self._state is ModelState.READY

    async def init(self) -> ModelState:
        """Load the model once. Concurrent callers all wait for the same load."""
        task = self.start()
        await asyncio.shield(task)
        return self._state

    async def _load(self) -> None:
        model_path = self._settings.local_model_path
        try:
            if model_path is None:
                raise FileNotFoundError("LOCAL_MODEL_PATH is not configured")
            logger.info("Loading local segmentation model from %s", model_path)
            model = await asyncio.to_thread(self._loader, Path(model_path), self._device)
        except asyncio.CancelledError:
            self._state = ModelState.UNLOADED
            raise
        except Exception as exc:  # noqa: BLE001
            self._error = exc
            self._state = ModelState.LOAD_FAILED
            logger.error("Local segmentation model failed to load, fallback disabled: %s", exc)
            return

        self._model = model
        self._state = ModelState.READY
        logger.info("Local segmentation model loaded on device: %s", self._device)

    def start(self) -> asyncio.Task:
        """Schedule the single load on the running loop and return its task."""
        if self._load_task is None:
            self._state = ModelState.LOADING
            self._load_task = asyncio.get_running_loop().create_task(self._load())
        return self._load_task

    async def dispose(self) -> None:
        task, self._load_task = self._load_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        async with self.inference_lock:
            self._model = None
            self._error = None
            self._state = ModelState.UNLOADED
        if self._device.type == "cuda":
            torch.cuda.empty_cache()
        logger.info("Local segmentation model disposed")
