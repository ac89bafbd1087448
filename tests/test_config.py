from __future__ import annotations

import logging
from pathlib import Path

import pytest

from kurento_recorder.config import (
    DEFAULT_TEMP_DIR,
    ManagerConfig,
    MediaProfile,
    RecordingMode,
    RecordingQuality,
    SessionOptions,
    ShareType,
    normalise_session_options,
)
from kurento_recorder.errors import ConfigError, ErrorCode

URL = "ws://kms.test:8888/kurento"


def test_manager_config_defaults() -> None:
    config = ManagerConfig(kurento_url=URL)
    assert config.reconnect is True
    assert config.reconnect_attempts == 5
    assert config.reconnect_base_delay_ms == 1000
    assert config.reconnect_max_delay_ms == 30000
    assert config.preserve_pipelines_on_disconnect is False
    assert config.max_reconnection_time_ms == 30000
    assert config.temp_dir == DEFAULT_TEMP_DIR
    assert config.logging_level == logging.INFO


@pytest.mark.parametrize("url", ["", "   ", "http://kms:8888/kurento"])
def test_manager_config_rejects_bad_urls(url: str) -> None:
    with pytest.raises(ConfigError) as excinfo:
        ManagerConfig(kurento_url=url)
    assert excinfo.value.code is ErrorCode.CONFIG_ERROR


def test_manager_config_clamps_negative_attempts(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        config = ManagerConfig(kurento_url=URL, reconnect_attempts=-3)
    assert config.reconnect_attempts == 0
    assert "Negative reconnect attempts" in caplog.text


def test_manager_config_validates_delays() -> None:
    with pytest.raises(ConfigError):
        ManagerConfig(kurento_url=URL, reconnect_base_delay_ms=0)
    with pytest.raises(ConfigError):
        ManagerConfig(kurento_url=URL, reconnect_base_delay_ms=500, reconnect_max_delay_ms=100)
    with pytest.raises(ConfigError):
        ManagerConfig(kurento_url=URL, max_reconnection_time_ms=-1)
    with pytest.raises(ConfigError):
        ManagerConfig(kurento_url=URL, log_level="chatty")


def test_manager_config_from_mapping_rejects_unknown_keys() -> None:
    with pytest.raises(ConfigError) as excinfo:
        ManagerConfig.from_mapping({"kurento_url": URL, "colour": "red"})
    assert "colour" in str(excinfo.value)
    with pytest.raises(ConfigError):
        ManagerConfig.from_mapping({"reconnect": False})


def test_manager_config_from_env(tmp_path: Path) -> None:
    environ = {
        "KURENTO_RECORDER_URL": URL,
        "KURENTO_RECORDER_RECONNECT": "no",
        "KURENTO_RECORDER_RECONNECT_ATTEMPTS": "7",
        "KURENTO_RECORDER_PRESERVE_PIPELINES_ON_DISCONNECT": "true",
        "KURENTO_RECORDER_TEMP_DIR": str(tmp_path),
        "KURENTO_RECORDER_LOG_LEVEL": "DEBUG",
        "UNRELATED": "ignored",
    }
    config = ManagerConfig.from_env(environ)
    assert config.kurento_url == URL
    assert config.reconnect is False
    assert config.reconnect_attempts == 7
    assert config.preserve_pipelines_on_disconnect is True
    assert config.temp_dir == str(tmp_path)
    assert config.logging_level == logging.DEBUG


def test_manager_config_from_env_requires_url() -> None:
    with pytest.raises(ConfigError):
        ManagerConfig.from_env({})


def test_high_quality_audio_video_defaults(tmp_path: Path) -> None:
    options = SessionOptions(
        session_id="abc",
        recording_mode=RecordingMode.AUDIO_VIDEO,
        media_profile=MediaProfile.WEBM,
        quality=RecordingQuality.HIGH,
    )
    config = normalise_session_options(options, str(tmp_path))
    assert (config.min_bitrate, config.max_bitrate, config.frame_rate) == (1000, 4000, 30)
    assert config.has_audio is True
    assert config.insert_blank_screen_on_pause is True
    assert config.blank_screen_color == "black"
    assert config.share_type is ShareType.UNKNOWN
    assert config.file_path == str(tmp_path / "recording_abc.webm")


def test_defaults_generate_session_id(tmp_path: Path) -> None:
    first = normalise_session_options(None, str(tmp_path))
    second = normalise_session_options(SessionOptions(), str(tmp_path))
    assert first.session_id and second.session_id
    assert first.session_id != second.session_id
    assert first.media_profile is MediaProfile.WEBM
    assert first.quality is RecordingQuality.HIGH
    assert first.recording_mode is RecordingMode.AUDIO_VIDEO


@pytest.mark.parametrize(
    ("mode", "profile"),
    [
        ("audio-only", MediaProfile.WEBM_AUDIO_ONLY),
        ("video-only", MediaProfile.WEBM_VIDEO_ONLY),
        ("audio-video", MediaProfile.WEBM),
    ],
)
def test_profile_follows_recording_mode(mode: str, profile: MediaProfile, tmp_path: Path) -> None:
    config = normalise_session_options(SessionOptions(recording_mode=mode), str(tmp_path))
    assert config.media_profile is profile


def test_mp4_profile_uses_mp4_extension(tmp_path: Path) -> None:
    config = normalise_session_options(
        SessionOptions(session_id="x", media_profile="MP4"), str(tmp_path)
    )
    assert config.file_path.endswith("recording_x.mp4")


def test_unsuitable_profile_only_warns(caplog: pytest.LogCaptureFixture, tmp_path: Path) -> None:
    with caplog.at_level(logging.WARNING):
        config = normalise_session_options(
            SessionOptions(recording_mode="audio-only", media_profile="WEBM"), str(tmp_path)
        )
    assert config.media_profile is MediaProfile.WEBM
    assert "may not be optimal" in caplog.text


def test_min_greater_than_max_is_swapped(tmp_path: Path) -> None:
    config = normalise_session_options(
        SessionOptions(min_bitrate=5000, max_bitrate=1500), str(tmp_path)
    )
    assert (config.min_bitrate, config.max_bitrate) == (1500, 5000)


def test_min_above_preset_max_is_swapped(tmp_path: Path) -> None:
    config = normalise_session_options(
        SessionOptions(quality="low", min_bitrate=1200), str(tmp_path)
    )
    assert config.min_bitrate <= config.max_bitrate
    assert (config.min_bitrate, config.max_bitrate) == (1000, 1200)


@pytest.mark.parametrize("value", [0, -100])
def test_non_positive_bounds_revert_to_preset(value: int, tmp_path: Path) -> None:
    config = normalise_session_options(
        SessionOptions(quality="medium", min_bitrate=value, max_bitrate=value), str(tmp_path)
    )
    assert (config.min_bitrate, config.max_bitrate) == (500, 2000)


def test_audio_only_forces_audio(tmp_path: Path) -> None:
    config = normalise_session_options(
        SessionOptions(recording_mode="audio-only", has_audio=False), str(tmp_path)
    )
    assert config.has_audio is True


def test_video_only_defaults_to_no_audio(tmp_path: Path) -> None:
    config = normalise_session_options(SessionOptions(recording_mode="video-only"), str(tmp_path))
    assert config.has_audio is False


def test_video_only_requires_positive_dimensions(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as excinfo:
        normalise_session_options(
            SessionOptions(recording_mode="video-only", width=0, height=720), str(tmp_path)
        )
    assert excinfo.value.code is ErrorCode.INVALID_PARAMETER


def test_frame_rate_must_be_positive(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        normalise_session_options(SessionOptions(frame_rate=0), str(tmp_path))


def test_unknown_quality_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as excinfo:
        normalise_session_options(SessionOptions(quality="cinematic"), str(tmp_path))
    assert excinfo.value.code is ErrorCode.INVALID_PARAMETER


def test_unknown_recording_mode_is_kept(caplog: pytest.LogCaptureFixture, tmp_path: Path) -> None:
    with caplog.at_level(logging.WARNING):
        config = normalise_session_options(
            SessionOptions(recording_mode="screen-share"), str(tmp_path)
        )
    assert config.recording_mode == "screen-share"
    assert config.media_profile is MediaProfile.WEBM
    assert "Unknown recording mode" in caplog.text


def test_session_config_to_dict_uses_plain_values(tmp_path: Path) -> None:
    config = normalise_session_options(SessionOptions(session_id="s1"), str(tmp_path))
    data = config.to_dict()
    assert data["session_id"] == "s1"
    assert data["media_profile"] == "WEBM"
    assert data["quality"] == "high"
    assert data["recording_mode"] == "audio-video"
    assert data["share_type"] == "unknown"
