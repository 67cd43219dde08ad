"""Error taxonomy shared by intake, providers, orchestration and compositing."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    # Intake
    INPUT_VALIDATION = "input_validation"
    # Provider level, recovered by the orchestrator when a fallback exists
    AUTH_ERROR = "auth_error"
    QUOTA_ERROR = "quota_error"
    TRANSIENT_ERROR = "transient_error"
    INVALID_RESPONSE = "invalid_response"
    NO_FOREGROUND_DETECTED = "no_foreground_detected"
    MODEL_UNAVAILABLE = "model_unavailable"
    INFERENCE_ERROR = "inference_error"
    # Compositing, always fatal for the attempt
    DIMENSION_MISMATCH = "dimension_mismatch"
    INVALID_BACKGROUND_ASSET = "invalid_background_asset"


USER_MESSAGES = {
    ErrorKind.INPUT_VALIDATION: "Please upload an image file (JPEG, PNG, WEBP or GIF) under the size limit.",
    ErrorKind.AUTH_ERROR: "Background removal service rejected the access key. The key is invalid or expired.",
    ErrorKind.QUOTA_ERROR: "Background removal service credit limit reached. Please try again later.",
    ErrorKind.TRANSIENT_ERROR: "Background removal service is unreachable right now. Please try again.",
    ErrorKind.INVALID_RESPONSE: "Background removal service returned an unreadable result. Please try again.",
    ErrorKind.NO_FOREGROUND_DETECTED: "No foreground objects detected. Please try another image.",
    ErrorKind.MODEL_UNAVAILABLE: "Background removal model is not ready. Please try again later.",
    ErrorKind.INFERENCE_ERROR: "Failed to process the image with AI. Please try another image.",
    ErrorKind.DIMENSION_MISMATCH: "Internal error: the mask does not match the image size. Please retry.",
    ErrorKind.INVALID_BACKGROUND_ASSET: "The background image could not be read. Please choose another image.",
}


def user_message(kind: ErrorKind) -> str:
    return USER_MESSAGES[kind]


class BackgroundRemovalError(Exception):
    """Base class for every error raised by the pipeline."""


class InputValidationError(BackgroundRemovalError, ValueError):
    """Upload rejected before the pipeline starts."""

    kind = ErrorKind.INPUT_VALIDATION

    def __init__(self, message: str, status_code: int = 400) -> None:
        self.status_code = status_code
        super().__init__(message)


class ProviderError(BackgroundRemovalError):
    """A single segmentation attempt failed."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None) -> None:
        self.kind = kind
        self.message = message or user_message(kind)
        super().__init__(self.message)


class SegmentationError(BackgroundRemovalError):
    """Both tiers are exhausted; this is what the user sees."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        remote_kind: Optional[ErrorKind] = None,
    ) -> None:
        self.kind = kind
        self.remote_kind = remote_kind
        self.message = message
        super().__init__(message)

    @property
    def user_message(self) -> str:
        text = user_message(self.kind)
        if self.remote_kind is not None and self.remote_kind != self.kind:
            text = f"{text} ({user_message(self.remote_kind)})"
        return text


class CompositingError(BackgroundRemovalError):
    def __init__(self, kind: ErrorKind, message: Optional[str] = None) -> None:
        self.kind = kind
        self.message = message or user_message(kind)
        super().__init__(self.message)


class PipelineStateError(BackgroundRemovalError):
    """An operation was called before the session had what it needs."""


class ExportNotReadyError(PipelineStateError):
    """No current composite result; recomposite or process first."""


class StaleRequestError(BackgroundRemovalError):
    """A newer request superseded the one that was running."""
