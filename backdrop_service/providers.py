"""Segmentation provider interface and the outcome value both tiers return."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from .errors import ErrorKind, ProviderError, user_message
from .imaging import SegmentationMask, Tier


@dataclass(frozen=True)
class ProviderOutcome:
    tier: Tier
    mask: Optional[SegmentationMask] = None
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.mask is not None

    @classmethod
    def success(cls, tier: Tier, mask: SegmentationMask) -> "ProviderOutcome":
        return cls(tier=tier, mask=mask)

    @classmethod
    def failure(cls, tier: Tier, kind: ErrorKind, message: Optional[str] = None) -> "ProviderOutcome":
        return cls(tier=tier, kind=kind, message=message or user_message(kind))

    @classmethod
    def from_error(cls, tier: Tier, error: ProviderError) -> "ProviderOutcome":
        return cls.failure(tier, error.kind, error.message)


class SegmentationProvider(Protocol):
    tier: Tier

    async def segment(self, *args, **kwargs) -> ProviderOutcome:  # pragma: no cover - interface only
        ...


def guard_foreground(mask: SegmentationMask, threshold: float) -> SegmentationMask:
    """Reject masks that would composite into an empty frame."""
    if not mask.has_foreground(threshold):
        raise ProviderError(ErrorKind.NO_FOREGROUND_DETECTED)
    return mask
