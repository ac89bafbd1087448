"""Creation and wiring of the ingress and recorder endpoints of a session."""
from __future__ import annotations

import logging
import posixpath
import re
from pathlib import PurePosixPath, PureWindowsPath
from typing import Any

from .config import (
    DEFAULT_RECORDER_OPTIONS,
    DEFAULT_WEBRTC_OPTIONS,
    MediaProfile,
    RecordingMode,
)
from .elements import Connectable, IngressEndpoint, MediaKind, RecordingSink
from .errors import ErrorCode, MediaError
from .pipeline import MediaPipeline
from .rpc import MediaServerError

logger = logging.getLogger(__name__)

_URI_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]+://")

NOT_CREATED = "NOT_CREATED"
UNKNOWN_STATE = "UNKNOWN"


def file_uri(file_path: str) -> str:
    """Return the recorder target URI for *file_path*.

    Absolute paths become ``file://`` URIs, relative paths are handed to the
    media server unchanged apart from using forward slashes, and values that
    already carry a scheme (``file://``, ``s3://``...) pass through.
    """

    if _URI_SCHEME.match(file_path):
        return file_path
    windows = PureWindowsPath(file_path)
    if windows.drive:
        return "file:///" + windows.as_posix()
    path = posixpath.normpath(file_path.replace("\\", "/"))
    if PurePosixPath(path).is_absolute():
        return "file://" + path
    return path


def _media_constraints(mode: RecordingMode | str, has_audio: bool) -> dict[str, bool]:
    if mode is RecordingMode.AUDIO_ONLY:
        return {"audio": True, "video": False}
    if mode is RecordingMode.VIDEO_ONLY:
        return {"audio": False, "video": True}
    return {"audio": bool(has_audio), "video": True}


class EndpointManager:
    """Own the ingress/recorder pair of one session.

    The pair is wired according to the recording mode. While video is paused
    a blank-screen element can take the place of the ingress video feed.
    """

    def __init__(self, pipeline: MediaPipeline) -> None:
        self._pipeline = pipeline
        self._webrtc: IngressEndpoint | None = None
        self._recorder: RecordingSink | None = None
        self._blank: Connectable | None = None
        self._mode: RecordingMode | str = RecordingMode.AUDIO_VIDEO
        self._recording = False

    @property
    def webrtc_endpoint(self) -> IngressEndpoint | None:
        return self._webrtc

    @property
    def recorder_endpoint(self) -> RecordingSink | None:
        return self._recorder

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def blank_screen_active(self) -> bool:
        return self._blank is not None

    @property
    def _records_video(self) -> bool:
        return self._mode is not RecordingMode.AUDIO_ONLY

    async def create_endpoints(
        self,
        mode: RecordingMode | str,
        profile: MediaProfile,
        file_path: str,
        has_audio: bool,
        *,
        webrtc_options: dict[str, Any] | None = None,
        recorder_options: dict[str, Any] | None = None,
    ) -> tuple[IngressEndpoint, RecordingSink]:
        if self._webrtc is not None or self._recorder is not None:
            raise MediaError(
                "Endpoints have already been created for this session",
                ErrorCode.ENDPOINT_CREATION_FAILED,
            )
        if not isinstance(mode, RecordingMode) and mode in RecordingMode._value2member_map_:
            mode = RecordingMode(mode)
        self._mode = mode
        webrtc_params = {**DEFAULT_WEBRTC_OPTIONS, **(webrtc_options or {})}
        webrtc_params["mediaConstraints"] = _media_constraints(mode, has_audio)
        recorder_params = {
            "uri": file_uri(file_path),
            "mediaProfile": MediaProfile(profile).value,
            **DEFAULT_RECORDER_OPTIONS,
            **(recorder_options or {}),
        }
        logger.info("Creating endpoints for %s recording to %s", mode, recorder_params["uri"])

        self._webrtc = await self._pipeline.create_webrtc_endpoint(webrtc_params, name="webrtc")
        self._recorder = await self._pipeline.create_recorder_endpoint(
            recorder_params, name="recorder"
        )
        await self._connect_for_mode(mode)
        logger.info("Endpoints created and connected")
        return self._webrtc, self._recorder

    async def _connect_for_mode(self, mode: RecordingMode | str) -> None:
        assert self._webrtc is not None and self._recorder is not None
        if mode is RecordingMode.AUDIO_VIDEO:
            await self._pipeline.connect(self._webrtc, self._recorder)
        elif mode is RecordingMode.AUDIO_ONLY:
            await self._pipeline.connect(self._webrtc, self._recorder, MediaKind.AUDIO)
        elif mode is RecordingMode.VIDEO_ONLY:
            await self._pipeline.connect(self._webrtc, self._recorder, MediaKind.VIDEO)
        else:
            logger.warning("Unknown recording mode %r, connecting audio and video", mode)
            await self._pipeline.connect(self._webrtc, self._recorder)

    # ------------------------------------------------------------------
    # Recording control
    # ------------------------------------------------------------------
    async def start_recording(self) -> None:
        recorder = self._require_recorder()
        if self._recording:
            logger.warning("Recording already started")
            return
        logger.info("Starting recording")
        try:
            await recorder.record()
        except MediaServerError as exc:
            logger.error("Error starting recording: %s", exc)
            raise MediaError(
                f"Failed to start recording: {exc}", ErrorCode.RECORDING_START_ERROR
            ) from exc
        self._recording = True

    async def stop_recording(self) -> None:
        recorder = self._require_recorder()
        if not self._recording:
            logger.warning("Recording not started, nothing to stop")
            return
        logger.info("Stopping recording")
        try:
            await recorder.stop()
        except MediaServerError as exc:
            logger.error("Error stopping recording: %s", exc)
            raise MediaError(
                f"Failed to stop recording: {exc}", ErrorCode.RECORDING_STOP_ERROR
            ) from exc
        self._recording = False

    async def get_recording_state(self) -> str:
        if self._recorder is None:
            return NOT_CREATED
        try:
            return await self._recorder.get_state()
        except MediaServerError as exc:
            logger.warning("Error getting recorder state: %s", exc)
            return UNKNOWN_STATE

    def _require_recorder(self) -> RecordingSink:
        if self._recorder is None:
            raise MediaError("Recorder endpoint not created", ErrorCode.RECORDER_UNAVAILABLE)
        return self._recorder

    # ------------------------------------------------------------------
    # Blank screen substitution
    # ------------------------------------------------------------------
    async def connect_blank_screen(self, element: Connectable) -> None:
        """Feed the recorder's video input from *element* instead of the peer."""

        recorder = self._recorder
        if recorder is None:
            raise MediaError("Recorder endpoint not created", ErrorCode.MEDIA_CONNECTION_ERROR)
        logger.info("Connecting blank screen to recorder")
        self._blank = element
        if self._webrtc is not None and self._records_video:
            try:
                await self._pipeline.disconnect(self._webrtc, recorder, MediaKind.VIDEO)
            except MediaError as exc:
                logger.warning("Error disconnecting WebRTC video source: %s", exc)
        await self._pipeline.connect(element, recorder, MediaKind.VIDEO)

    async def disconnect_blank_screen(self) -> None:
        """Restore the peer's video feed to the recorder."""

        recorder = self._recorder
        webrtc = self._webrtc
        if recorder is None or webrtc is None:
            raise MediaError(
                "Endpoints not created, cannot disconnect blank screen",
                ErrorCode.MEDIA_CONNECTION_ERROR,
            )
        blank = self._blank
        self._blank = None
        if blank is not None:
            logger.info("Disconnecting blank screen from recorder")
            try:
                await self._pipeline.disconnect(blank, recorder, MediaKind.VIDEO)
            except MediaError as exc:
                logger.warning("Error disconnecting blank screen: %s", exc)
        if self._records_video:
            await self._pipeline.connect(webrtc, recorder, MediaKind.VIDEO)
            logger.info("Original video source reconnected to recorder")

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------
    async def release_endpoints(self) -> None:
        """Stop recording and release both endpoints; never raises."""

        if self._recording and self._recorder is not None:
            try:
                await self._recorder.stop()
            except MediaServerError as exc:
                logger.warning("Error stopping recording during release: %s", exc)
            self._recording = False

        for label, element in (("recorder", self._recorder), ("WebRTC", self._webrtc)):
            if element is None:
                continue
            try:
                await element.release()
            except MediaServerError as exc:
                logger.warning("Error releasing %s endpoint: %s", label, exc)
            else:
                self._pipeline.forget_element(element)
        self._recorder = None
        self._webrtc = None
        self._blank = None
        logger.info("All endpoints released")


__all__ = ["EndpointManager", "NOT_CREATED", "UNKNOWN_STATE", "file_uri"]
