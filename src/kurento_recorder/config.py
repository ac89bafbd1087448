"""Configuration values and session option normalisation."""
from __future__ import annotations

import logging
import os
import tempfile
import uuid
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigError, ErrorCode

logger = logging.getLogger(__name__)


class RecordingMode(str, Enum):
    """Media kinds captured by a recording."""

    AUDIO_VIDEO = "audio-video"
    AUDIO_ONLY = "audio-only"
    VIDEO_ONLY = "video-only"


class MediaProfile(str, Enum):
    """Container presets understood by the Kurento recorder."""

    WEBM = "WEBM"
    WEBM_VIDEO_ONLY = "WEBM_VIDEO_ONLY"
    WEBM_AUDIO_ONLY = "WEBM_AUDIO_ONLY"
    MP4 = "MP4"
    MP4_VIDEO_ONLY = "MP4_VIDEO_ONLY"
    MP4_AUDIO_ONLY = "MP4_AUDIO_ONLY"


class RecordingQuality(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ULTRA = "ultra"


class PauseType(str, Enum):
    """Which sub-streams a pause or resume applies to."""

    BOTH = "both"
    VIDEO_ONLY = "video-only"
    AUDIO_ONLY = "audio-only"


class ShareType(str, Enum):
    SCREEN = "screen"
    WINDOW = "window"
    BROWSER = "browser"
    APPLICATION = "application"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class QualityPreset:
    """Bitrate bounds (kbps) and frame rate for a quality level."""

    min_bitrate: int
    max_bitrate: int
    frame_rate: int
    quality_level: int


QUALITY_PRESETS: dict[RecordingQuality, QualityPreset] = {
    RecordingQuality.LOW: QualityPreset(200, 1000, 15, 7),
    RecordingQuality.MEDIUM: QualityPreset(500, 2000, 24, 5),
    RecordingQuality.HIGH: QualityPreset(1000, 4000, 30, 3),
    RecordingQuality.ULTRA: QualityPreset(2000, 8000, 60, 1),
}

RECORDING_MODE_PROFILES: dict[RecordingMode, MediaProfile] = {
    RecordingMode.AUDIO_VIDEO: MediaProfile.WEBM,
    RecordingMode.AUDIO_ONLY: MediaProfile.WEBM_AUDIO_ONLY,
    RecordingMode.VIDEO_ONLY: MediaProfile.WEBM_VIDEO_ONLY,
}

MEDIA_PROFILE_EXTENSIONS: dict[MediaProfile, str] = {
    MediaProfile.WEBM: ".webm",
    MediaProfile.WEBM_VIDEO_ONLY: ".webm",
    MediaProfile.WEBM_AUDIO_ONLY: ".webm",
    MediaProfile.MP4: ".mp4",
    MediaProfile.MP4_VIDEO_ONLY: ".mp4",
    MediaProfile.MP4_AUDIO_ONLY: ".mp4",
}

_SUITABLE_PROFILES: dict[RecordingMode, tuple[MediaProfile, ...]] = {
    RecordingMode.AUDIO_VIDEO: (MediaProfile.WEBM, MediaProfile.MP4),
    RecordingMode.AUDIO_ONLY: (MediaProfile.WEBM_AUDIO_ONLY, MediaProfile.MP4_AUDIO_ONLY),
    RecordingMode.VIDEO_ONLY: (MediaProfile.WEBM_VIDEO_ONLY, MediaProfile.MP4_VIDEO_ONLY),
}

DEFAULT_PROFILE = MediaProfile.WEBM
DEFAULT_QUALITY = RecordingQuality.HIGH
DEFAULT_RECORDING_MODE = RecordingMode.AUDIO_VIDEO
DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080
DEFAULT_BLANK_SCREEN_COLOR = "black"

DEFAULT_WEBRTC_OPTIONS: dict[str, Any] = {
    "useIpv6": False,
    "mediaConstraints": {"audio": True, "video": True},
}

DEFAULT_RECORDER_OPTIONS: dict[str, Any] = {
    "stopOnEndOfStream": True,
    "quality": 9,
}

DEFAULT_TEMP_DIR = str(Path(tempfile.gettempdir()) / "recordings")

_LOG_LEVELS: dict[str, int] = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _coerce_enum(enum_type: type[Enum], value: Any, label: str) -> Any:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError as exc:
        raise ConfigError(
            f"Unknown {label} {value!r}", ErrorCode.INVALID_PARAMETER
        ) from exc


def _parse_bool(value: Any, label: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{label} must be a boolean, got {value!r}")


@dataclass(frozen=True, slots=True)
class ManagerConfig:
    """Settings shared by every component of a :class:`RecordingManager`."""

    kurento_url: str
    reconnect: bool = True
    reconnect_attempts: int = 5
    reconnect_base_delay_ms: int = 1000
    reconnect_max_delay_ms: int = 30000
    log_level: str = "info"
    temp_dir: str = DEFAULT_TEMP_DIR
    preserve_pipelines_on_disconnect: bool = False
    max_reconnection_time_ms: int = 30000
    ping_interval_s: float = 240.0
    request_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        url = (self.kurento_url or "").strip() if isinstance(self.kurento_url, str) else ""
        if not url:
            raise ConfigError("Kurento WebSocket URL is required")
        if not url.startswith(("ws://", "wss://")):
            raise ConfigError(f"Kurento URL must use ws:// or wss://, got {url!r}")
        object.__setattr__(self, "kurento_url", url)
        try:
            attempts = int(self.reconnect_attempts)
            base_delay = int(self.reconnect_base_delay_ms)
            max_delay = int(self.reconnect_max_delay_ms)
            window = int(self.max_reconnection_time_ms)
            ping_interval = float(self.ping_interval_s)
            request_timeout = float(self.request_timeout_s)
        except (TypeError, ValueError) as exc:
            raise ConfigError("Reconnection settings must be numeric") from exc
        if attempts < 0:
            logger.warning("Negative reconnect attempts provided, setting to 0")
            attempts = 0
        if base_delay <= 0:
            raise ConfigError("Reconnect base delay must be positive")
        if max_delay < base_delay:
            raise ConfigError("Reconnect max delay must not be lower than the base delay")
        if window < 0:
            raise ConfigError("Maximum reconnection time must not be negative")
        if ping_interval < 0:
            raise ConfigError("Ping interval must not be negative")
        if request_timeout <= 0:
            raise ConfigError("Request timeout must be positive")
        level = str(self.log_level).strip().lower()
        if level not in _LOG_LEVELS:
            raise ConfigError(f"Unknown log level {self.log_level!r}")
        object.__setattr__(self, "reconnect_attempts", attempts)
        object.__setattr__(self, "reconnect_base_delay_ms", base_delay)
        object.__setattr__(self, "reconnect_max_delay_ms", max_delay)
        object.__setattr__(self, "max_reconnection_time_ms", window)
        object.__setattr__(self, "ping_interval_s", ping_interval)
        object.__setattr__(self, "request_timeout_s", request_timeout)
        object.__setattr__(self, "log_level", level)
        object.__setattr__(self, "reconnect", _parse_bool(self.reconnect, "reconnect"))
        object.__setattr__(
            self,
            "preserve_pipelines_on_disconnect",
            _parse_bool(
                self.preserve_pipelines_on_disconnect, "preserve_pipelines_on_disconnect"
            ),
        )
        object.__setattr__(self, "temp_dir", str(self.temp_dir or DEFAULT_TEMP_DIR))

    @property
    def logging_level(self) -> int:
        return _LOG_LEVELS[self.log_level]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ManagerConfig":
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        if "kurento_url" not in payload:
            raise ConfigError("Kurento WebSocket URL is required")
        return cls(**dict(payload))

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        prefix: str = "KURENTO_RECORDER_",
    ) -> "ManagerConfig":
        """Build a configuration from ``KURENTO_RECORDER_*`` variables."""

        env = os.environ if environ is None else environ
        payload: dict[str, Any] = {}
        for item in fields(cls):
            key = "URL" if item.name == "kurento_url" else item.name.upper()
            value = env.get(prefix + key)
            if value is not None and value.strip():
                payload[item.name] = value.strip()
        return cls.from_mapping(payload)


@dataclass(slots=True)
class SessionOptions:
    """Caller supplied session options; every field is optional."""

    session_id: str | None = None
    media_profile: MediaProfile | str | None = None
    quality: RecordingQuality | str | None = None
    min_bitrate: int | None = None
    max_bitrate: int | None = None
    recording_mode: RecordingMode | str | None = None
    has_audio: bool | None = None
    width: int | None = None
    height: int | None = None
    frame_rate: int | None = None
    share_type: ShareType | str | None = None
    file_path: str | None = None
    insert_blank_screen_on_pause: bool | None = None
    blank_screen_color: str | None = None


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Normalised options for a single recording session."""

    session_id: str
    media_profile: MediaProfile
    quality: RecordingQuality
    min_bitrate: int
    max_bitrate: int
    recording_mode: RecordingMode | str
    has_audio: bool
    width: int
    height: int
    frame_rate: int
    share_type: ShareType
    file_path: str
    insert_blank_screen_on_pause: bool
    blank_screen_color: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data


def _coerce_recording_mode(value: Any) -> RecordingMode | str:
    if value is None:
        return DEFAULT_RECORDING_MODE
    if isinstance(value, RecordingMode):
        return value
    try:
        return RecordingMode(value)
    except ValueError:
        # Unknown modes are kept and wired as audio+video by the endpoint manager.
        logger.warning("Unknown recording mode %r, audio and video will both be recorded", value)
        return str(value)


def _warn_unsuitable_profile(profile: MediaProfile, mode: RecordingMode | str) -> None:
    if not isinstance(mode, RecordingMode):
        return
    suitable = _SUITABLE_PROFILES[mode]
    if profile not in suitable:
        logger.warning(
            "Media profile %s may not be optimal for %s recording, consider using %s",
            profile.value,
            mode.value,
            " or ".join(item.value for item in suitable),
        )


def normalise_session_options(
    options: SessionOptions | None,
    temp_dir: str = DEFAULT_TEMP_DIR,
) -> SessionConfig:
    """Apply defaults and sanity rules to caller supplied *options*."""

    options = options or SessionOptions()
    session_id = (options.session_id or "").strip() or str(uuid.uuid4())

    mode = _coerce_recording_mode(options.recording_mode)
    if options.media_profile is None:
        profile = RECORDING_MODE_PROFILES.get(mode, DEFAULT_PROFILE)  # type: ignore[arg-type]
        logger.debug("Selected media profile %s for recording mode %s", profile.value, mode)
    else:
        profile = _coerce_enum(MediaProfile, options.media_profile, "media profile")
    _warn_unsuitable_profile(profile, mode)

    quality = _coerce_enum(
        RecordingQuality, options.quality or DEFAULT_QUALITY, "quality preset"
    )
    preset = QUALITY_PRESETS[quality]

    file_path = options.file_path
    if not file_path:
        extension = MEDIA_PROFILE_EXTENSIONS[profile]
        file_path = str(Path(temp_dir) / f"recording_{session_id}{extension}")
        logger.debug("Generated file path %s", file_path)

    if options.has_audio is None:
        has_audio = mode is not RecordingMode.VIDEO_ONLY
    else:
        has_audio = bool(options.has_audio)
    if mode is RecordingMode.AUDIO_ONLY and not has_audio:
        logger.warning("Audio-only recording mode selected but has_audio is false, enabling audio")
        has_audio = True

    width = DEFAULT_WIDTH if options.width is None else int(options.width)
    height = DEFAULT_HEIGHT if options.height is None else int(options.height)
    if mode is RecordingMode.VIDEO_ONLY and (width <= 0 or height <= 0):
        raise ConfigError(
            f"Invalid video dimensions {width}x{height} for video recording",
            ErrorCode.INVALID_PARAMETER,
        )

    min_bitrate = preset.min_bitrate if options.min_bitrate is None else int(options.min_bitrate)
    max_bitrate = preset.max_bitrate if options.max_bitrate is None else int(options.max_bitrate)
    if min_bitrate <= 0:
        logger.warning("Minimum bitrate must be positive, using preset value %s", preset.min_bitrate)
        min_bitrate = preset.min_bitrate
    if max_bitrate <= 0:
        logger.warning("Maximum bitrate must be positive, using preset value %s", preset.max_bitrate)
        max_bitrate = preset.max_bitrate
    if min_bitrate > max_bitrate:
        logger.warning("Minimum bitrate greater than maximum, swapping values")
        min_bitrate, max_bitrate = max_bitrate, min_bitrate

    frame_rate = preset.frame_rate if options.frame_rate is None else int(options.frame_rate)
    if frame_rate <= 0:
        raise ConfigError("Frame rate must be positive", ErrorCode.INVALID_PARAMETER)

    share_type = _coerce_enum(ShareType, options.share_type or ShareType.UNKNOWN, "share type")
    insert_blank = (
        True
        if options.insert_blank_screen_on_pause is None
        else bool(options.insert_blank_screen_on_pause)
    )

    return SessionConfig(
        session_id=session_id,
        media_profile=profile,
        quality=quality,
        min_bitrate=min_bitrate,
        max_bitrate=max_bitrate,
        recording_mode=mode,
        has_audio=has_audio,
        width=width,
        height=height,
        frame_rate=frame_rate,
        share_type=share_type,
        file_path=file_path,
        insert_blank_screen_on_pause=insert_blank,
        blank_screen_color=options.blank_screen_color or DEFAULT_BLANK_SCREEN_COLOR,
    )


__all__ = [
    "DEFAULT_RECORDER_OPTIONS",
    "DEFAULT_WEBRTC_OPTIONS",
    "MEDIA_PROFILE_EXTENSIONS",
    "ManagerConfig",
    "MediaProfile",
    "PauseType",
    "QUALITY_PRESETS",
    "QualityPreset",
    "RECORDING_MODE_PROFILES",
    "RecordingMode",
    "RecordingQuality",
    "SessionConfig",
    "SessionOptions",
    "ShareType",
    "normalise_session_options",
]
