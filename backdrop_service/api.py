"""
FastAPI layer exposing background removal.

Endpoints:
 - GET /health
 - POST /remove-bg
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Optional
from urllib.parse import quote

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import Response

from . import config
from .background import ImageBackground, SolidColor, Transparent
from .errors import CompositingError, ErrorKind, InputValidationError, SegmentationError
from .intake import check_declared_upload
from .local_provider import LocalSegmentationProvider
from .model_loader import ModelLifecycleManager
from .orchestrator import FallbackOrchestrator
from .pipeline import BackgroundRemovalSession
from .remote_provider import RemoteSegmentationProvider

logger = logging.getLogger(__name__)

BACKGROUND_MODES = {"transparent", "color", "image"}


def _segmentation_status(kind: ErrorKind) -> int:
    if kind is ErrorKind.NO_FOREGROUND_DETECTED:
        return 422
    return 502


def create_app(
    settings: Optional[config.Settings] = None,
    manager: Optional[ModelLifecycleManager] = None,
    remote: Optional[RemoteSegmentationProvider] = None,
) -> FastAPI:
    settings = settings or config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    manager = manager or ModelLifecycleManager(settings)
    remote = remote or RemoteSegmentationProvider(settings)
    local = LocalSegmentationProvider(manager, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager.start()
        try:
            yield
        finally:
            await manager.dispose()

    app = FastAPI(title="Background Removal Service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.model_manager = manager

    def build_session() -> BackgroundRemovalSession:
        orchestrator = FallbackOrchestrator(remote, local, settings)
        return BackgroundRemovalSession(orchestrator, settings)

    @app.get("/health")
    def health(request: Request):
        return {"status": "ok", "model": request.app.state.model_manager.state.value}

    @app.post("/remove-bg")
    async def remove_bg(
        image: UploadFile = File(...),
        background: str = Form("transparent"),
        backgroundColor: Optional[str] = Form(None),
        backgroundImage: Optional[UploadFile] = File(None),
    ):
        mode = background.strip().lower()
        if mode not in BACKGROUND_MODES:
            raise HTTPException(status_code=400, detail="background must be one of transparent | color | image")

        session = build_session()
        try:
            # Declared type and size are checked before the body is buffered.
            check_declared_upload(image.content_type, image.size, settings)
            data = await image.read()
            session.load_image(data, image.content_type or "", filename=image.filename, size_bytes=image.size)

            if mode == "color":
                if not backgroundColor:
                    raise HTTPException(status_code=400, detail="backgroundColor is required for color backgrounds")
                session.set_background(SolidColor.from_hex(backgroundColor))
            elif mode == "image":
                if backgroundImage is None:
                    raise HTTPException(status_code=400, detail="backgroundImage is required for image backgrounds")
                session.set_background(ImageBackground(await backgroundImage.read()))
            else:
                session.set_background(Transparent())

            result = await session.process()
            if result is None:
                raise HTTPException(status_code=409, detail="Request was superseded")
            artifact = session.export()
        except InputValidationError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        except SegmentationError as exc:
            logger.warning("segmentation exhausted kind=%s remote=%s", exc.kind.value, exc.remote_kind)
            raise HTTPException(
                status_code=_segmentation_status(exc.kind),
                detail={"kind": exc.kind.value, "message": exc.user_message},
            ) from exc
        except CompositingError as exc:
            status = 400 if exc.kind is ErrorKind.INVALID_BACKGROUND_ASSET else 422
            raise HTTPException(status_code=status, detail={"kind": exc.kind.value, "message": exc.message}) from exc
        except ValueError as ve:
            raise HTTPException(status_code=400, detail=str(ve)) from ve
        finally:
            session.close()

        headers = {
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(artifact.filename)}",
            "X-Segmentation-Tier": result.tier.value,
        }
        if result.warnings:
            headers["X-Result-Warnings"] = " | ".join(result.warnings)
        return Response(content=artifact.data, media_type=artifact.media_type, headers=headers)

    return app


app = create_app()
