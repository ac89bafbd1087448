"""Coordinate WebRTC recordings through a Kurento Media Server."""

from typing import Any

from .config import (
    ManagerConfig,
    MediaProfile,
    PauseType,
    RecordingMode,
    RecordingQuality,
    SessionConfig,
    SessionOptions,
)
from .errors import (
    ConfigError,
    ErrorCode,
    KurentoConnectionError,
    MediaError,
    RecordingError,
    SessionError,
    SignalingError,
)
from .manager import RecordingManager
from .session import RecordingResult, RecordingSession, RecordingState
from .signaling import IceCandidate
from .version import APP_VERSION


def create_app(*args: Any, **kwargs: Any):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "APP_VERSION",
    "ConfigError",
    "ErrorCode",
    "IceCandidate",
    "KurentoConnectionError",
    "ManagerConfig",
    "MediaError",
    "MediaProfile",
    "PauseType",
    "RecordingError",
    "RecordingManager",
    "RecordingMode",
    "RecordingQuality",
    "RecordingResult",
    "RecordingSession",
    "RecordingState",
    "SessionConfig",
    "SessionError",
    "SessionOptions",
    "SignalingError",
    "create_app",
]
