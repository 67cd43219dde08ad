from __future__ import annotations

from pathlib import Path

import pytest
import torch

from backdrop_service.config import Settings
from backdrop_service.model_loader import ModelLifecycleManager

from tests.fakes import ConstantMatte


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        remove_bg_api_key="test-key",
        remote_endpoint="https://segmentation.test/v1.0/removebg",
        local_model_path=Path("/models/matting.torchscript"),
        max_working_dimension=800,
    )


@pytest.fixture
def make_manager(settings: Settings):
    def factory(model: torch.nn.Module = None, loader=None) -> ModelLifecycleManager:
        if loader is None:
            chosen = model if model is not None else ConstantMatte(1.0)

            def loader(path, device):
                return chosen

        return ModelLifecycleManager(settings, loader=loader, device=torch.device("cpu"))

    return factory
