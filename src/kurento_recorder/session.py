"""Recording session state machine."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Mapping

from aiortc import RTCSessionDescription

from .config import MediaProfile, PauseType, RecordingMode, SessionConfig
from .elements import MediaElement
from .endpoints import EndpointManager
from .errors import ConfigError, ErrorCode, MediaError, RecordingError, SessionError
from .events import (
    ErrorEvent,
    IceCandidateEvent,
    PausedEvent,
    QualityChangedEvent,
    RecordingStartedEvent,
    RecordingStoppedEvent,
    ResumedEvent,
    SessionEvents,
    StateChangeEvent,
)
from .pipeline import MediaPipeline
from .signaling import IceCandidate, SignalingHandler

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class RecordingState(str, Enum):
    CREATED = "created"
    READY = "ready"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class RecordingResult:
    """Outcome of a stopped recording; ``duration`` is in whole seconds."""

    path: str
    duration: int
    media_profile: MediaProfile
    session_id: str
    start: int
    end: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "duration": self.duration,
            "media_profile": self.media_profile.value,
            "session_id": self.session_id,
            "timestamp": {"start": self.start, "end": self.end},
        }


class RecordingSession:
    """Drive one recording through ``created -> ready -> recording <-> paused -> stopped``.

    Lifecycle operations are serialised by a per-session lock. Failures of
    server round-trips move the session to ``error``, are published on
    ``events.error`` and re-raised with the session id attached.
    """

    def __init__(
        self,
        options: SessionConfig,
        pipeline: MediaPipeline,
        *,
        clock: Clock | None = None,
        webrtc_options: Mapping[str, Any] | None = None,
        recorder_options: Mapping[str, Any] | None = None,
    ) -> None:
        self._options = options
        self._pipeline = pipeline
        self._clock = clock or _epoch_ms
        self._webrtc_options = dict(webrtc_options or {})
        self._recorder_options = dict(recorder_options or {})
        self._endpoints = EndpointManager(pipeline)
        self._signaling = SignalingHandler()
        self._lock = asyncio.Lock()
        self._state = RecordingState.CREATED
        self._negotiated = False

        self._start_time = 0
        self._stop_time = 0
        self._pause_start = 0
        self._total_paused_ms = 0
        self._pause_type = PauseType.BOTH
        self._audio_paused = False
        self._video_paused = False
        self._blank_screen: MediaElement | None = None

        self.events = SessionEvents()
        self._signaling.candidates.subscribe(self._forward_candidate)
        logger.info(
            "Recording session %s created (mode=%s profile=%s blank_screen=%s)",
            options.session_id,
            getattr(options.recording_mode, "value", options.recording_mode),
            options.media_profile.value,
            options.insert_blank_screen_on_pause,
        )

    def __repr__(self) -> str:
        return f"<RecordingSession {self.session_id} state={self._state.value}>"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> str:
        return self._options.session_id

    @property
    def options(self) -> SessionConfig:
        return self._options

    @property
    def file_path(self) -> str:
        return self._options.file_path

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def pipeline(self) -> MediaPipeline:
        return self._pipeline

    @property
    def paused_audio(self) -> bool:
        return self._audio_paused

    @property
    def paused_video(self) -> bool:
        return self._video_paused

    @property
    def total_paused_ms(self) -> int:
        return self._total_paused_ms

    @property
    def blank_screen_active(self) -> bool:
        return self._blank_screen is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        async with self._lock:
            self._require_state("initialise session", RecordingState.CREATED)
            logger.debug("Initialising recording session %s", self.session_id)
            try:
                await self._pipeline.initialize()
            except Exception as exc:
                raise self._fail(
                    exc, "Failed to initialise recording session", ErrorCode.SESSION_CREATION_FAILED
                )
            self._set_state(RecordingState.READY)
            logger.info("Recording session %s ready", self.session_id)

    async def process_offer(self, offer: str | RTCSessionDescription) -> RTCSessionDescription:
        """Create the endpoints, negotiate with the peer and return the answer."""

        async with self._lock:
            self._require_state("process offer", RecordingState.READY)
            options = self._options
            try:
                webrtc = self._endpoints.webrtc_endpoint
                if webrtc is None:
                    webrtc, _ = await self._endpoints.create_endpoints(
                        options.recording_mode,
                        options.media_profile,
                        options.file_path,
                        options.has_audio,
                        webrtc_options=self._webrtc_options,
                        recorder_options=self._recorder_options,
                    )
                    await self._signaling.set_endpoint(webrtc)
                answer = await self._signaling.process_offer(offer)
                await self._signaling.gather_candidates()
                await self._signaling.set_quality_parameters(
                    options.min_bitrate, options.max_bitrate
                )
            except Exception as exc:
                raise self._fail(exc, "Failed to process offer", ErrorCode.SESSION_NOT_READY)
            self._negotiated = True
            logger.info("Session %s processed WebRTC offer", self.session_id)
            return answer

    async def add_ice_candidate(self, candidate: IceCandidate | Mapping[str, Any]) -> None:
        """Apply or buffer a remote candidate; failures are only logged."""

        try:
            await self._signaling.add_ice_candidate(candidate)
        except RecordingError as exc:
            logger.error("Session %s failed to add ICE candidate: %s", self.session_id, exc)

    async def start(self) -> None:
        async with self._lock:
            self._require_state("start recording", RecordingState.READY)
            if not self._negotiated:
                raise SessionError(
                    "WebRTC endpoint not created, process an offer first",
                    ErrorCode.SESSION_NOT_READY,
                    session_id=self.session_id,
                )
            logger.info("Starting recording for session %s", self.session_id)
            try:
                await self._endpoints.start_recording()
            except Exception as exc:
                raise self._fail(exc, "Failed to start recording", ErrorCode.RECORDING_START_ERROR)
            self._start_time = self._clock()
            self._set_state(RecordingState.RECORDING)
            self.events.recording_started.emit(
                RecordingStartedEvent(self.session_id, self._start_time)
            )

    async def pause(self, pause_type: PauseType | str = PauseType.BOTH) -> None:
        pause_type = PauseType(pause_type)
        async with self._lock:
            self._require_state("pause recording", RecordingState.RECORDING)
            logger.info("Pausing session %s (%s)", self.session_id, pause_type.value)
            self._pause_start = self._clock()
            self._pause_type = pause_type
            if pause_type in (PauseType.BOTH, PauseType.AUDIO_ONLY):
                self._audio_paused = True
            if pause_type in (PauseType.BOTH, PauseType.VIDEO_ONLY):
                self._video_paused = True
                if self._options.insert_blank_screen_on_pause and self._blank_screen is None:
                    await self._insert_blank_screen()
            self._set_state(RecordingState.PAUSED)
            self.events.paused.emit(PausedEvent(self.session_id, self._pause_start, pause_type))

    async def resume(self, resume_type: PauseType | str | None = None) -> None:
        async with self._lock:
            self._require_state("resume recording", RecordingState.PAUSED)
            actual = PauseType(resume_type) if resume_type is not None else self._pause_type
            now = self._clock()
            pause_duration = max(0, now - self._pause_start)
            self._total_paused_ms += pause_duration
            # The next partial resume only counts time from here.
            self._pause_start = now
            logger.info("Resuming session %s (%s)", self.session_id, actual.value)

            if actual in (PauseType.BOTH, PauseType.AUDIO_ONLY):
                self._audio_paused = False
            if actual in (PauseType.BOTH, PauseType.VIDEO_ONLY):
                self._video_paused = False
                if self._blank_screen is not None:
                    await self._remove_blank_screen()

            if not self._audio_paused and not self._video_paused:
                self._set_state(RecordingState.RECORDING)
            self.events.resumed.emit(ResumedEvent(self.session_id, now, pause_duration, actual))
            logger.debug(
                "Session %s resumed after %sms (audio_paused=%s video_paused=%s)",
                self.session_id,
                pause_duration,
                self._audio_paused,
                self._video_paused,
            )

    async def stop(self) -> RecordingResult:
        async with self._lock:
            if self._state not in (RecordingState.RECORDING, RecordingState.PAUSED):
                if self._state is not RecordingState.ERROR:
                    raise self._invalid_state("stop recording")
                logger.warning("Stopping session %s from error state", self.session_id)
            cleanup_only = self._state is RecordingState.ERROR
            now = self._clock()
            if self._state is RecordingState.PAUSED:
                self._total_paused_ms += max(0, now - self._pause_start)
                self._pause_start = now
            if self._blank_screen is not None:
                await self._remove_blank_screen()
            try:
                if self._endpoints.recorder_endpoint is not None:
                    await self._endpoints.stop_recording()
            except Exception as exc:
                if not cleanup_only:
                    raise self._fail(exc, "Failed to stop recording", ErrorCode.RECORDING_STOP_ERROR)
                logger.warning("Ignoring stop failure for session %s: %s", self.session_id, exc)
            self._stop_time = self._clock()
            self._audio_paused = self._video_paused = False
            result = self._build_result()
            self._set_state(RecordingState.STOPPED)
            self.events.recording_stopped.emit(RecordingStoppedEvent(self.session_id, result))
            logger.info(
                "Recording %s stopped: %s (%ss)", self.session_id, result.path, result.duration
            )
            return result

    async def set_quality(
        self,
        min_bitrate: int | None = None,
        max_bitrate: int | None = None,
        frame_rate: int | None = None,
    ) -> SessionConfig:
        """Change bandwidth bounds or frame rate of a running recording."""

        async with self._lock:
            if self._state not in (RecordingState.RECORDING, RecordingState.PAUSED):
                raise self._invalid_state("update quality")
            options = self._options
            new_min = options.min_bitrate if min_bitrate is None else int(min_bitrate)
            new_max = options.max_bitrate if max_bitrate is None else int(max_bitrate)
            new_rate = options.frame_rate if frame_rate is None else int(frame_rate)
            if new_min <= 0 or new_max <= 0 or new_min > new_max:
                raise ConfigError(
                    f"Invalid bitrate bounds {new_min}-{new_max}",
                    ErrorCode.INVALID_PARAMETER,
                    session_id=self.session_id,
                )
            if new_rate <= 0:
                raise ConfigError(
                    "Frame rate must be positive",
                    ErrorCode.INVALID_PARAMETER,
                    session_id=self.session_id,
                )
            logger.info(
                "Updating quality of session %s: %s-%skbps %sfps",
                self.session_id,
                new_min,
                new_max,
                new_rate,
            )
            if min_bitrate is not None or max_bitrate is not None:
                try:
                    await self._signaling.set_quality_parameters(new_min, new_max)
                except Exception as exc:
                    raise self._fail(
                        exc, "Failed to update quality parameters", ErrorCode.INVALID_PARAMETER
                    )
            self._options = replace(
                options, min_bitrate=new_min, max_bitrate=new_max, frame_rate=new_rate
            )
            self.events.quality_changed.emit(
                QualityChangedEvent(
                    self.session_id, new_min, new_max, new_rate, "user", self._clock()
                )
            )
            return self._options

    async def get_recording_state(self) -> str:
        return await self._endpoints.get_recording_state()

    async def release(self) -> None:
        """Release the blank screen, endpoints and pipeline of this session.

        Only a failing pipeline release is reported to the caller.
        """

        async with self._lock:
            logger.debug("Releasing resources of session %s", self.session_id)
            blank = self._blank_screen
            self._blank_screen = None
            if blank is not None:
                try:
                    await blank.release()
                except Exception as exc:
                    logger.warning("Error releasing blank screen element: %s", exc)
            await self._endpoints.release_endpoints()
            self._signaling.detach()
            self._negotiated = False
            try:
                await self._pipeline.release()
            except RecordingError as exc:
                exc.session_id = exc.session_id or self.session_id
                raise
            logger.info("Session %s resources released", self.session_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _insert_blank_screen(self) -> None:
        if self._options.recording_mode is RecordingMode.AUDIO_ONLY:
            return
        logger.debug("Inserting blank screen for session %s", self.session_id)
        element: MediaElement | None = None
        try:
            element = await self._pipeline.create_blank_video_element(
                self._options.blank_screen_color
            )
            self._blank_screen = element
            await self._endpoints.connect_blank_screen(element)
        except RecordingError as exc:
            logger.error("Error inserting blank screen for session %s: %s", self.session_id, exc)

    async def _remove_blank_screen(self) -> None:
        blank = self._blank_screen
        if blank is None:
            return
        logger.debug("Removing blank screen for session %s", self.session_id)
        self._blank_screen = None
        try:
            await self._endpoints.disconnect_blank_screen()
        except RecordingError as exc:
            logger.error("Error restoring video for session %s: %s", self.session_id, exc)
        try:
            await blank.release()
            self._pipeline.forget_element(blank)
        except Exception as exc:
            logger.error("Error releasing blank screen for session %s: %s", self.session_id, exc)

    def _build_result(self) -> RecordingResult:
        duration = 0
        if self._start_time > 0 and self._stop_time > 0:
            elapsed = max(0, self._stop_time - self._start_time)
            if self._options.insert_blank_screen_on_pause:
                counted = elapsed
            else:
                counted = max(0, elapsed - min(self._total_paused_ms, elapsed))
            # Half-up to whole seconds.
            duration = (counted + 500) // 1000
            logger.debug(
                "Duration of %s: elapsed=%sms paused=%sms -> %ss",
                self.session_id,
                elapsed,
                self._total_paused_ms,
                duration,
            )
        return RecordingResult(
            path=self._options.file_path,
            duration=duration,
            media_profile=self._options.media_profile,
            session_id=self.session_id,
            start=self._start_time,
            end=self._stop_time,
        )

    def _forward_candidate(self, candidate: IceCandidate) -> None:
        self.events.ice_candidate.emit(IceCandidateEvent(self.session_id, candidate))

    def _set_state(self, state: RecordingState) -> None:
        previous = self._state
        if previous is state:
            return
        logger.debug("Session %s state change: %s -> %s", self.session_id, previous.value, state.value)
        self._state = state
        self.events.state_change.emit(StateChangeEvent(self.session_id, previous, state))

    def _require_state(self, action: str, state: RecordingState) -> None:
        if self._state is not state:
            raise self._invalid_state(action)

    def _invalid_state(self, action: str) -> SessionError:
        return SessionError(
            f"Cannot {action} in state {self._state.value}",
            ErrorCode.SESSION_INVALID_STATE,
            session_id=self.session_id,
        )

    def _fail(self, exc: Exception, message: str, code: ErrorCode) -> RecordingError:
        """Move to ``error`` and return the exception the caller should raise."""

        if isinstance(exc, RecordingError):
            error = exc
            if error.session_id is None:
                error.session_id = self.session_id
        else:
            error = MediaError(f"{message}: {exc}", code, session_id=self.session_id)
            error.__cause__ = exc
        logger.error("%s: %s", message, error)
        self._set_state(RecordingState.ERROR)
        self.events.error.emit(ErrorEvent(error, self.session_id))
        return error


__all__ = ["RecordingResult", "RecordingSession", "RecordingState"]
