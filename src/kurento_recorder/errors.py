"""Error taxonomy shared by the recording components."""
from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable identifiers attached to every :class:`RecordingError`."""

    CONNECTION_FAILED = "CONNECTION_FAILED"
    CONNECTION_IN_PROGRESS = "CONNECTION_IN_PROGRESS"
    DISCONNECT_FAILED = "DISCONNECT_FAILED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_ALREADY_EXISTS = "SESSION_ALREADY_EXISTS"
    SESSION_INVALID_STATE = "SESSION_INVALID_STATE"
    SESSION_NOT_READY = "SESSION_NOT_READY"
    SESSION_CREATION_FAILED = "SESSION_CREATION_FAILED"
    PIPELINE_CREATION_FAILED = "PIPELINE_CREATION_FAILED"
    PIPELINE_NOT_READY = "PIPELINE_NOT_READY"
    PIPELINE_RELEASE_FAILED = "PIPELINE_RELEASE_FAILED"
    ELEMENT_CREATION_FAILED = "ELEMENT_CREATION_FAILED"
    ENDPOINT_CREATION_FAILED = "ENDPOINT_CREATION_FAILED"
    ENDPOINT_RELEASE_ERROR = "ENDPOINT_RELEASE_ERROR"
    MEDIA_PIPELINE_ERROR = "MEDIA_PIPELINE_ERROR"
    MEDIA_CONNECTION_ERROR = "MEDIA_CONNECTION_ERROR"
    RECORDING_START_ERROR = "RECORDING_START_ERROR"
    RECORDING_STOP_ERROR = "RECORDING_STOP_ERROR"
    RECORDER_UNAVAILABLE = "RECORDER_UNAVAILABLE"
    WEBRTC_OFFER_ERROR = "WEBRTC_OFFER_ERROR"
    WEBRTC_ICE_ERROR = "WEBRTC_ICE_ERROR"
    WEBRTC_BANDWIDTH_ERROR = "WEBRTC_BANDWIDTH_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    RESOURCE_RELEASE_ERROR = "RESOURCE_RELEASE_ERROR"


class RecordingError(RuntimeError):
    """Base error raised by the recording components.

    ``code`` identifies the failure class and ``session_id`` is set whenever
    the failure happened inside a session context. The underlying exception,
    if any, is available through ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        *,
        session_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.session_id = session_id

    def __str__(self) -> str:
        message = super().__str__()
        if self.session_id:
            return f"[{self.session_id}] {message}"
        return message


class KurentoConnectionError(RecordingError):
    """Raised when the media server cannot be reached or released cleanly."""


class SessionError(RecordingError):
    """Raised for invalid session lookups and lifecycle transitions."""


class MediaError(RecordingError):
    """Raised when pipeline or endpoint operations fail on the media server."""


class SignalingError(RecordingError):
    """Raised when offer/answer, ICE or bandwidth negotiation fails."""


class ConfigError(RecordingError, ValueError):
    """Raised when configuration values are missing or invalid."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIG_ERROR,
        *,
        session_id: str | None = None,
    ) -> None:
        super().__init__(message, code, session_id=session_id)


__all__ = [
    "ConfigError",
    "ErrorCode",
    "KurentoConnectionError",
    "MediaError",
    "RecordingError",
    "SessionError",
    "SignalingError",
]
