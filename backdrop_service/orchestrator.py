"""
Two-tier segmentation strategy.

The remote service is tried first. If it fails for any reason and the local
model is ready, the local model is tried exactly once. Callers observe the
state machine through `subscribe` instead of owning pipeline logic:

    IDLE -> REMOTE_IN_FLIGHT -> REMOTE_SUCCEEDED -> DONE
                             -> REMOTE_FAILED -> LOCAL_IN_FLIGHT -> LOCAL_SUCCEEDED -> DONE
                                                                 -> LOCAL_FAILED -> ERROR
                             -> REMOTE_FAILED -> ERROR   (no fallback available)
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from . import config
from .background import BackgroundSpec, SolidColor
from .errors import ErrorKind, SegmentationError, StaleRequestError
from .imaging import SourceImage, Tier, WorkingRaster
from .local_provider import LocalSegmentationProvider
from .providers import ProviderOutcome
from .remote_provider import RemoteSegmentationProvider

logger = logging.getLogger(__name__)

FALLBACK_NOTICE = "API failed. Trying with local AI model instead..."
NO_FALLBACK_MESSAGE = "Remote service failed and no local fallback model is available"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    REMOTE_IN_FLIGHT = "remote_in_flight"
    REMOTE_SUCCEEDED = "remote_succeeded"
    REMOTE_FAILED = "remote_failed"
    LOCAL_IN_FLIGHT = "local_in_flight"
    LOCAL_SUCCEEDED = "local_succeeded"
    LOCAL_FAILED = "local_failed"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StateChange:
    state: OrchestratorState
    token: int
    tier: Optional[Tier] = None
    notice: Optional[str] = None


@dataclass(frozen=True)
class OrchestrationResult:
    outcome: ProviderOutcome
    # The remote failure that triggered (or would have triggered) a fallback.
    remote_failure: Optional[ProviderOutcome] = None

    @property
    def ok(self) -> bool:
        return self.outcome.ok

    @property
    def tier(self) -> Tier:
        return self.outcome.tier

    @property
    def fell_back(self) -> bool:
        return self.remote_failure is not None

    def raise_for_failure(self) -> None:
        if self.ok:
            return
        remote_kind = self.remote_failure.kind if self.remote_failure is not None else None
        raise SegmentationError(self.outcome.kind, self.outcome.message, remote_kind=remote_kind)


Listener = Callable[[StateChange], None]


class FallbackOrchestrator:
    def __init__(
        self,
        remote: RemoteSegmentationProvider,
        local: LocalSegmentationProvider,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self._remote = remote
        self._local = local
        self._settings = settings or config.get_settings()
        self._listeners: List[Listener] = []
        self._tokens = itertools.count(1)
        self._current_token = 0
        self._state = OrchestratorState.IDLE

    @property
    def state(self) -> OrchestratorState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state observer. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def begin(self) -> int:
        """Issue a new request token; any earlier token becomes stale."""
        self._current_token = next(self._tokens)
        self._state = OrchestratorState.IDLE
        return self._current_token

    def cancel(self) -> None:
        self.begin()

    def is_current(self, token: int) -> bool:
        return token == self._current_token

    def _ensure_current(self, token: int) -> None:
        if not self.is_current(token):
            logger.info("discarding stale segmentation result token=%d current=%d", token, self._current_token)
            raise StaleRequestError(f"request {token} superseded by {self._current_token}")

    def _transition(
        self,
        state: OrchestratorState,
        token: int,
        tier: Optional[Tier] = None,
        notice: Optional[str] = None,
    ) -> None:
        self._state = state
        change = StateChange(state=state, token=token, tier=tier, notice=notice)
        logger.debug("orchestrator token=%d -> %s", token, state.value)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:  # noqa: BLE001
                logger.exception("orchestrator listener failed on %s", state.value)

    def _checked(self, outcome: ProviderOutcome) -> ProviderOutcome:
        # Whatever the provider, an empty mask is never a success.
        if outcome.ok and not outcome.mask.has_foreground(self._settings.mask_threshold):
            return ProviderOutcome.failure(outcome.tier, ErrorKind.NO_FOREGROUND_DETECTED)
        return outcome

    async def _attempt_remote(self, source: SourceImage, raster: WorkingRaster, color_hint) -> ProviderOutcome:
        try:
            return await self._remote.segment(source, raster.size, color_hint)
        except Exception as exc:  # noqa: BLE001
            logger.exception("remote provider raised unexpectedly: %s", exc)
            return ProviderOutcome.failure(Tier.REMOTE, ErrorKind.TRANSIENT_ERROR, str(exc) or None)

    async def _attempt_local(self, raster: WorkingRaster) -> ProviderOutcome:
        try:
            return await self._local.segment(raster)
        except Exception as exc:  # noqa: BLE001
            logger.exception("local provider raised unexpectedly: %s", exc)
            return ProviderOutcome.failure(Tier.LOCAL, ErrorKind.INFERENCE_ERROR)

    async def run(
        self,
        source: SourceImage,
        raster: WorkingRaster,
        background: BackgroundSpec,
        token: Optional[int] = None,
    ) -> OrchestrationResult:
        """
        Drive one segmentation request to a terminal outcome.

        Raises:
            StaleRequestError: when `begin()` was called again while this
                request was in flight; its result must be discarded.
        """
        if token is None:
            token = self.begin()
        color_hint = None
        if isinstance(background, SolidColor) and self._settings.remote_send_color_hint:
            color_hint = background.color

        self._transition(OrchestratorState.REMOTE_IN_FLIGHT, token, Tier.REMOTE)
        remote = self._checked(await self._attempt_remote(source, raster, color_hint))
        self._ensure_current(token)
        if remote.ok:
            self._transition(OrchestratorState.REMOTE_SUCCEEDED, token, Tier.REMOTE)
            self._transition(OrchestratorState.DONE, token, Tier.REMOTE)
            return OrchestrationResult(outcome=remote)

        self._transition(OrchestratorState.REMOTE_FAILED, token, Tier.REMOTE, remote.message)
        if not self._local.ready():
            logger.warning("remote tier failed (%s) and local model is not ready; no fallback", remote.kind.value)
            failure = ProviderOutcome.failure(Tier.LOCAL, ErrorKind.MODEL_UNAVAILABLE, NO_FALLBACK_MESSAGE)
            self._transition(OrchestratorState.ERROR, token, Tier.LOCAL, failure.message)
            return OrchestrationResult(outcome=failure, remote_failure=remote)

        logger.info("remote tier failed (%s), falling back to local model", remote.kind.value)
        self._transition(OrchestratorState.LOCAL_IN_FLIGHT, token, Tier.LOCAL, FALLBACK_NOTICE)
        local = self._checked(await self._attempt_local(raster))
        self._ensure_current(token)
        if local.ok:
            self._transition(OrchestratorState.LOCAL_SUCCEEDED, token, Tier.LOCAL)
            self._transition(OrchestratorState.DONE, token, Tier.LOCAL)
        else:
            self._transition(OrchestratorState.LOCAL_FAILED, token, Tier.LOCAL, local.message)
            self._transition(OrchestratorState.ERROR, token, Tier.LOCAL, local.message)
        return OrchestrationResult(outcome=local, remote_failure=remote)
