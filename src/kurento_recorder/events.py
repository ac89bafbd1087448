"""Typed event records and the callback registries that carry them."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, TypeVar

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from .config import PauseType, SessionConfig
    from .session import RecordingResult, RecordingState
    from .signaling import IceCandidate

logger = logging.getLogger(__name__)

T = TypeVar("T")

Callback = Callable[[T], "Awaitable[None] | None"]


class EventChannel(Generic[T]):
    """One-to-many fan-out of a single event type.

    Callbacks may be plain functions or coroutine functions. Coroutines are
    scheduled on the running loop; a failing callback is logged and never
    affects the emitter or the other subscribers.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._callbacks: list[Callback[T]] = []
        self._pending: set[asyncio.Future[Any]] = set()

    def __len__(self) -> int:
        return len(self._callbacks)

    def subscribe(self, callback: Callback[T]) -> Callable[[], None]:
        """Register *callback* and return a function that removes it again."""

        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def clear(self) -> None:
        self._callbacks.clear()

    def emit(self, event: T) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(event)
            except Exception:
                logger.exception("Handler for %s event failed", self.name)
                continue
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._pending.add(future)
                future.add_done_callback(self._on_done)

    def _on_done(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Async handler for %s event failed: %s", self.name, exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for coroutine callbacks scheduled by earlier emits."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def _channel(name: str) -> Any:
    return field(default_factory=lambda: EventChannel(name))


# ----------------------------------------------------------------------
# Connection supervisor events
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ConnectingEvent:
    url: str
    attempt: int = 0


@dataclass(frozen=True, slots=True)
class ConnectedEvent:
    url: str
    reconnected: bool = False


@dataclass(frozen=True, slots=True)
class DisconnectedEvent:
    url: str
    unexpected: bool = False


@dataclass(frozen=True, slots=True)
class ReconnectingEvent:
    attempt: int
    delay_ms: int


@dataclass(frozen=True, slots=True)
class ReconnectFailedEvent:
    attempt: int
    error: BaseException


@dataclass(frozen=True, slots=True)
class ReconnectExhaustedEvent:
    attempts: int


@dataclass(slots=True)
class ConnectorEvents:
    connecting: EventChannel[ConnectingEvent] = _channel("connecting")
    connected: EventChannel[ConnectedEvent] = _channel("connected")
    disconnected: EventChannel[DisconnectedEvent] = _channel("disconnected")
    reconnecting: EventChannel[ReconnectingEvent] = _channel("reconnecting")
    reconnect_failed: EventChannel[ReconnectFailedEvent] = _channel("reconnect-failed")
    reconnect_max_attempts: EventChannel[ReconnectExhaustedEvent] = _channel(
        "reconnect-max-attempts"
    )


# ----------------------------------------------------------------------
# Session events
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StateChangeEvent:
    session_id: str
    previous: "RecordingState"
    state: "RecordingState"


@dataclass(frozen=True, slots=True)
class RecordingStartedEvent:
    session_id: str
    timestamp: int


@dataclass(frozen=True, slots=True)
class RecordingStoppedEvent:
    session_id: str
    result: "RecordingResult"


@dataclass(frozen=True, slots=True)
class PausedEvent:
    session_id: str
    timestamp: int
    pause_type: "PauseType"


@dataclass(frozen=True, slots=True)
class ResumedEvent:
    session_id: str
    timestamp: int
    pause_duration_ms: int
    resume_type: "PauseType"


@dataclass(frozen=True, slots=True)
class QualityChangedEvent:
    session_id: str
    min_bitrate: int
    max_bitrate: int
    frame_rate: int
    reason: str
    timestamp: int


@dataclass(frozen=True, slots=True)
class IceCandidateEvent:
    session_id: str
    candidate: "IceCandidate"


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    error: BaseException
    session_id: str | None = None


@dataclass(slots=True)
class SessionEvents:
    state_change: EventChannel[StateChangeEvent] = _channel("state-change")
    recording_started: EventChannel[RecordingStartedEvent] = _channel("recording-started")
    recording_stopped: EventChannel[RecordingStoppedEvent] = _channel("recording-stopped")
    paused: EventChannel[PausedEvent] = _channel("paused")
    resumed: EventChannel[ResumedEvent] = _channel("resumed")
    quality_changed: EventChannel[QualityChangedEvent] = _channel("quality-changed")
    ice_candidate: EventChannel[IceCandidateEvent] = _channel("ice-candidate")
    error: EventChannel[ErrorEvent] = _channel("error")


# ----------------------------------------------------------------------
# Session coordinator events
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PipelinePreservedEvent:
    session_count: int
    max_reconnection_time_ms: int


@dataclass(frozen=True, slots=True)
class PipelineReleasedEvent:
    session_id: str
    reason: str


@dataclass(frozen=True, slots=True)
class ReconnectionTimedOutEvent:
    session_id: str
    timeout_ms: int


@dataclass(frozen=True, slots=True)
class SessionCreatedEvent:
    session_id: str
    options: "SessionConfig"


@dataclass(frozen=True, slots=True)
class SessionEndedEvent:
    session_id: str
    result: "RecordingResult"


@dataclass(slots=True)
class ManagerEvents:
    connecting: EventChannel[ConnectingEvent] = _channel("connecting")
    connected: EventChannel[ConnectedEvent] = _channel("connected")
    disconnected: EventChannel[DisconnectedEvent] = _channel("disconnected")
    reconnecting: EventChannel[ReconnectingEvent] = _channel("reconnecting")
    reconnect_failed: EventChannel[ReconnectFailedEvent] = _channel("reconnect-failed")
    reconnect_max_attempts: EventChannel[ReconnectExhaustedEvent] = _channel(
        "reconnect-max-attempts"
    )
    pipeline_preserved: EventChannel[PipelinePreservedEvent] = _channel("pipeline-preserved")
    pipeline_released: EventChannel[PipelineReleasedEvent] = _channel("pipeline-released")
    reconnection_timed_out: EventChannel[ReconnectionTimedOutEvent] = _channel(
        "reconnection-timed-out"
    )
    session_created: EventChannel[SessionCreatedEvent] = _channel("session-created")
    session_ended: EventChannel[SessionEndedEvent] = _channel("session-ended")
    error: EventChannel[ErrorEvent] = _channel("error")


__all__ = [
    "ConnectedEvent",
    "ConnectingEvent",
    "ConnectorEvents",
    "DisconnectedEvent",
    "ErrorEvent",
    "EventChannel",
    "IceCandidateEvent",
    "ManagerEvents",
    "PausedEvent",
    "PipelinePreservedEvent",
    "PipelineReleasedEvent",
    "QualityChangedEvent",
    "ReconnectExhaustedEvent",
    "ReconnectFailedEvent",
    "ReconnectingEvent",
    "ReconnectionTimedOutEvent",
    "RecordingStartedEvent",
    "RecordingStoppedEvent",
    "ResumedEvent",
    "SessionCreatedEvent",
    "SessionEndedEvent",
    "SessionEvents",
    "StateChangeEvent",
]
