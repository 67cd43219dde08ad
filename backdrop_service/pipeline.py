"""
High-level background removal pipeline.

`BackgroundRemovalSession` owns one upload at a time and is the entry point
used by both the HTTP API and the local CLI helper:
bytes in -> intake -> working raster -> two-tier segmentation -> compositing
-> PNG out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePath
from typing import Optional

from . import config
from .background import BackgroundSpec, ResolvedBackground, SolidColor, Transparent, resolve_background
from .compositor import CompositeResult, composite
from .errors import ExportNotReadyError, PipelineStateError, StaleRequestError
from .imaging import SegmentationMask, SourceImage, Tier, WorkingRaster
from .intake import validate_upload
from .orchestrator import FallbackOrchestrator

logger = logging.getLogger(__name__)

EXPORT_SUFFIX = "-nobg"
FALLBACK_WARNING = "Result produced by the backup AI model; edges may be less precise."
LOW_COVERAGE_WARNING = "Very little foreground was detected; check the result before using it."


@dataclass(frozen=True)
class ExportArtifact:
    data: bytes
    filename: str
    media_type: str = "image/png"


def export_filename(original: Optional[str]) -> str:
    """`portrait.jpg` -> `portrait-nobg.png`."""
    stem = PurePath(original).stem if original else ""
    return f"{stem or 'image'}{EXPORT_SUFFIX}.png"


class BackgroundRemovalSession:
    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._settings = settings or config.get_settings()
        self._source: Optional[SourceImage] = None
        self._raster: Optional[WorkingRaster] = None
        self._mask: Optional[SegmentationMask] = None
        self._result: Optional[CompositeResult] = None
        self._background: ResolvedBackground = resolve_background(Transparent())

    @property
    def orchestrator(self) -> FallbackOrchestrator:
        return self._orchestrator

    @property
    def source(self) -> Optional[SourceImage]:
        return self._source

    @property
    def raster(self) -> Optional[WorkingRaster]:
        return self._raster

    @property
    def mask(self) -> Optional[SegmentationMask]:
        return self._mask

    @property
    def background(self) -> BackgroundSpec:
        return self._background.spec

    @property
    def result(self) -> Optional[CompositeResult]:
        return self._result

    def _release(self) -> None:
        self._raster = None
        self._mask = None
        self._result = None

    def load_image(
        self,
        data: bytes,
        mime_type: str,
        filename: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> SourceImage:
        """Validate and adopt a new upload. Anything from the previous one is dropped."""
        source = validate_upload(data, mime_type, size_bytes, filename, settings=self._settings)
        raster = WorkingRaster.from_source(source, self._settings.max_working_dimension)
        self._orchestrator.cancel()
        self._release()
        self._source = source
        self._raster = raster
        logger.info(
            "loaded %s %dx%d working=%dx%d",
            source.mime_type,
            source.width,
            source.height,
            raster.width,
            raster.height,
        )
        return source

    def set_background(self, spec: BackgroundSpec) -> None:
        """
        Switch the active background.

        The spec is resolved first; if that fails the previous spec and the
        previous result are left untouched. Otherwise the current result is
        invalidated until `recomposite()` or `process()` runs.
        """
        resolved = resolve_background(spec)
        self._background = resolved
        self._result = None

    def _composite(self, mask: SegmentationMask, background: ResolvedBackground) -> CompositeResult:
        result = composite(self._raster, mask, background, self._settings.mask_threshold)
        if mask.tier is Tier.LOCAL:
            result.warnings.append(FALLBACK_WARNING)
        ratio = mask.foreground_ratio(self._settings.mask_threshold)
        if ratio < self._settings.min_foreground_ratio:
            logger.warning("foreground covers only %.3f%% of the frame", ratio * 100.0)
            result.warnings.append(LOW_COVERAGE_WARNING)
        return result

    async def process(self) -> Optional[CompositeResult]:
        """
        Run segmentation and compositing for the loaded image.

        Every call segments afresh, so calling it again is the retry path.
        Returns None when a newer upload superseded this run, or when the
        background changed while segmenting. In the latter case the mask is
        kept, so `recomposite()` works whenever `mask_reusable()` allows it.

        Raises:
            PipelineStateError: when no image is loaded.
            SegmentationError: when both tiers failed.
            CompositingError: when the mask and raster disagree.
        """
        if self._source is None or self._raster is None:
            raise PipelineStateError("No image loaded")
        source, raster, background = self._source, self._raster, self._background
        token = self._orchestrator.begin()
        try:
            run = await self._orchestrator.run(source, raster, background.spec, token=token)
        except StaleRequestError:
            return None
        run.raise_for_failure()

        mask = run.outcome.mask
        result = self._composite(mask, background)
        if not self._orchestrator.is_current(token):
            logger.info("discarding composite for superseded request token=%d", token)
            return None
        self._mask = mask
        if self._background is not background:
            logger.info("background changed during segmentation, composite discarded token=%d", token)
            return None
        self._result = result
        return result

    def mask_reusable(self) -> bool:
        if self._mask is None:
            return False
        keyed = self._mask.keyed_color
        if keyed is None:
            return True
        spec = self._background.spec
        return isinstance(spec, SolidColor) and spec.color == keyed

    def recomposite(self) -> CompositeResult:
        """Composite the cached mask over the active background without segmenting again."""
        if self._raster is None or self._mask is None:
            raise PipelineStateError("Nothing to recomposite; run process() first")
        if not self.mask_reusable():
            raise PipelineStateError("Mask was keyed against another color; run process() again")
        self._result = self._composite(self._mask, self._background)
        return self._result

    def export(self) -> ExportArtifact:
        if self._result is None:
            raise ExportNotReadyError("No up-to-date result to export")
        filename = export_filename(self._source.filename if self._source else None)
        return ExportArtifact(data=self._result.png, filename=filename)

    def close(self) -> None:
        self._orchestrator.cancel()
        self._release()
        self._source = None
