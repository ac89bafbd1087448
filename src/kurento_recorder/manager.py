"""Registry of recording sessions bound to one media server connection."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import Any

from .config import ManagerConfig, SessionOptions, normalise_session_options
from .connector import KurentoConnector
from .errors import ConfigError, ErrorCode, KurentoConnectionError, RecordingError, SessionError
from .events import (
    ConnectedEvent,
    DisconnectedEvent,
    EventChannel,
    ManagerEvents,
    PipelinePreservedEvent,
    PipelineReleasedEvent,
    ReconnectionTimedOutEvent,
    SessionCreatedEvent,
    SessionEndedEvent,
)
from .pipeline import MediaPipeline
from .session import RecordingResult, RecordingSession

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "kurento_recorder"


class RecordingManager:
    """Create, track and tear down recording sessions.

    When ``preserve_pipelines_on_disconnect`` is enabled a lost or closed
    connection leaves active sessions in place. Each of them gets a release
    timer that fires after ``max_reconnection_time_ms`` unless the connection
    comes back first.
    """

    def __init__(
        self,
        config: ManagerConfig,
        *,
        connector: KurentoConnector | None = None,
    ) -> None:
        self._config = config
        logging.getLogger(PACKAGE_LOGGER).setLevel(config.logging_level)
        self._connector = connector or KurentoConnector(config)
        self._sessions: dict[str, RecordingSession] = {}
        self._reserved: set[str] = set()
        self._release_timers: dict[str, asyncio.Task[None]] = {}
        self._disconnected_at: int | None = None
        self._temp_dir_ready = False
        self.events = ManagerEvents()
        self._wire_connector_events()
        logger.info(
            "Recording manager initialised (url=%s preserve=%s window=%sms)",
            config.kurento_url,
            config.preserve_pipelines_on_disconnect,
            config.max_reconnection_time_ms,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def config(self) -> ManagerConfig:
        return self._config

    @property
    def connector(self) -> KurentoConnector:
        return self._connector

    @property
    def is_connected(self) -> bool:
        return self._connector.is_connected

    @property
    def active_session_count(self) -> int:
        return len(self._sessions)

    @property
    def active_session_ids(self) -> list[str]:
        return list(self._sessions)

    @property
    def disconnected_at(self) -> int | None:
        return self._disconnected_at

    @property
    def pending_release_timers(self) -> list[str]:
        return sorted(self._release_timers)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self._connector.is_connected:
            logger.debug("Already connected to media server")
            return
        await self._connector.connect()
        self._ensure_temp_dir()

    async def disconnect(self, release_pipelines: bool = False) -> None:
        """Close the connection, preserving or stopping the active sessions."""

        if self._should_preserve() and not release_pipelines:
            self._preserve_sessions()
        elif self._sessions:
            logger.info("Stopping %s active recording sessions", len(self._sessions))
            await self.stop_all_sessions()
        await self._connector.disconnect()

    async def aclose(self) -> None:
        await self.disconnect(release_pipelines=True)
        self._clear_release_timers()

    def _should_preserve(self) -> bool:
        return bool(self._sessions) and self._config.preserve_pipelines_on_disconnect

    def _preserve_sessions(self) -> None:
        if self._disconnected_at is not None:
            logger.debug("Sessions already preserved since %s", self._disconnected_at)
            return
        count = len(self._sessions)
        logger.info("Disconnecting with %s active sessions, preserving pipelines", count)
        self._disconnected_at = int(time.time() * 1000)
        if self._config.max_reconnection_time_ms > 0:
            for session_id in self._sessions:
                self._arm_release_timer(session_id)
        self.events.pipeline_preserved.emit(
            PipelinePreservedEvent(count, self._config.max_reconnection_time_ms)
        )

    def _ensure_temp_dir(self) -> None:
        temp_dir = self._config.temp_dir
        if self._temp_dir_ready or "://" in temp_dir:
            return
        try:
            Path(temp_dir).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Unable to create temporary directory %s: %s", temp_dir, exc)
            return
        self._temp_dir_ready = True
        logger.debug("Temporary directory %s ready", temp_dir)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    async def create_session(
        self, options: SessionOptions | None = None, **overrides: Any
    ) -> RecordingSession:
        """Create and initialise a session; keyword arguments populate ``SessionOptions``."""

        if overrides:
            if options is not None:
                raise ConfigError("Pass either SessionOptions or keyword options, not both")
            try:
                options = SessionOptions(**overrides)
            except TypeError as exc:
                raise ConfigError(f"Invalid session option: {exc}") from exc
        session_config = normalise_session_options(options, self._config.temp_dir)
        session_id = session_config.session_id
        if session_id in self._sessions or session_id in self._reserved:
            raise SessionError(
                f"Session with ID {session_id} already exists",
                ErrorCode.SESSION_ALREADY_EXISTS,
                session_id=session_id,
            )

        self._reserved.add(session_id)
        try:
            if not self._connector.is_connected:
                logger.info("Not connected to media server, connecting")
                await self.connect()
            client = self._connector.client
            if client is None:
                raise KurentoConnectionError(
                    "Media server client is not available", ErrorCode.CONNECTION_FAILED
                )
            logger.info("Creating recording session %s", session_id)
            pipeline = MediaPipeline(client, name=session_id)
            try:
                await pipeline.initialize()
                session = RecordingSession(session_config, pipeline)
                await session.initialize()
            except RecordingError as exc:
                await self._discard_pipeline(pipeline)
                logger.error("Error creating recording session %s: %s", session_id, exc)
                raise SessionError(
                    f"Error creating recording session: {exc}",
                    ErrorCode.SESSION_CREATION_FAILED,
                    session_id=session_id,
                ) from exc
        finally:
            self._reserved.discard(session_id)

        self._sessions[session_id] = session
        session.events.error.subscribe(self.events.error.emit)
        self.events.session_created.emit(SessionCreatedEvent(session_id, session_config))
        logger.info("Recording session %s created", session_id)
        return session

    def get_session(self, session_id: str) -> RecordingSession | None:
        return self._sessions.get(session_id)

    def require_session(self, session_id: str) -> RecordingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(
                f"Session with ID {session_id} not found",
                ErrorCode.SESSION_NOT_FOUND,
                session_id=session_id,
            )
        return session

    async def stop_session(self, session_id: str) -> RecordingResult:
        """Stop the recording, release its resources and forget the session."""

        session = self.require_session(session_id)
        self._cancel_release_timer(session_id)
        logger.info("Stopping recording session %s", session_id)
        try:
            result = await session.stop()
        except RecordingError:
            if self._disconnected_at is not None and self._config.max_reconnection_time_ms > 0:
                # Still preserved: the outage window keeps owning the session.
                self._arm_release_timer(session_id)
            raise
        self._sessions.pop(session_id, None)
        await self._release_quietly(session)
        self.events.session_ended.emit(SessionEndedEvent(session_id, result))
        logger.info("Recording session %s stopped (%s)", session_id, result.path)
        return result

    async def release_session(self, session_id: str, reason: str = "released") -> None:
        """Drop a session without producing a recording result."""

        session = self.require_session(session_id)
        self._cancel_release_timer(session_id)
        self._sessions.pop(session_id, None)
        await self._release_quietly(session)
        self.events.pipeline_released.emit(PipelineReleasedEvent(session_id, reason))

    async def stop_all_sessions(self) -> None:
        session_ids = list(self._sessions)
        logger.info("Stopping all recording sessions (%s)", len(session_ids))
        self._clear_release_timers()
        for session_id in session_ids:
            try:
                await self.stop_session(session_id)
            except RecordingError as exc:
                logger.error("Error stopping session %s: %s", session_id, exc)
                if session_id in self._sessions:
                    await self.release_session(session_id, reason="stop-failed")
        logger.info("All recording sessions stopped")

    async def _release_quietly(self, session: RecordingSession) -> None:
        try:
            await session.release()
        except RecordingError as exc:
            logger.error("Error releasing resources of session %s: %s", session.session_id, exc)

    async def _discard_pipeline(self, pipeline: MediaPipeline) -> None:
        try:
            await pipeline.release()
        except RecordingError as exc:
            logger.warning("Error releasing pipeline of failed session: %s", exc)

    # ------------------------------------------------------------------
    # Release timers
    # ------------------------------------------------------------------
    def _arm_release_timer(self, session_id: str) -> None:
        self._cancel_release_timer(session_id)
        timeout_ms = self._config.max_reconnection_time_ms
        loop = asyncio.get_running_loop()
        self._release_timers[session_id] = loop.create_task(
            self._release_after_timeout(session_id, timeout_ms)
        )
        logger.debug("Scheduled pipeline release for session %s in %sms", session_id, timeout_ms)

    async def _release_after_timeout(self, session_id: str, timeout_ms: int) -> None:
        await asyncio.sleep(timeout_ms / 1000.0)
        self._release_timers.pop(session_id, None)
        session = self._sessions.pop(session_id, None)
        logger.warning("Reconnection timed out for session %s, releasing pipeline", session_id)
        if session is not None:
            await self._release_quietly(session)
        self.events.reconnection_timed_out.emit(ReconnectionTimedOutEvent(session_id, timeout_ms))
        self.events.pipeline_released.emit(
            PipelineReleasedEvent(session_id, "reconnection-timeout")
        )
        if not self._release_timers:
            self._disconnected_at = None

    def _cancel_release_timer(self, session_id: str) -> None:
        task = self._release_timers.pop(session_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _clear_release_timers(self) -> None:
        for session_id in list(self._release_timers):
            self._cancel_release_timer(session_id)
            logger.debug("Cleared pipeline release timer for session %s", session_id)

    async def wait_for_release_timers(self) -> None:
        """Wait until every armed release timer has fired or been cancelled."""

        tasks = list(self._release_timers.values())
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Connection events
    # ------------------------------------------------------------------
    def _wire_connector_events(self) -> None:
        source = self._connector.events
        source.connected.subscribe(self._on_connected)
        source.disconnected.subscribe(self._on_disconnected)
        pairs: tuple[tuple[EventChannel[Any], EventChannel[Any]], ...] = (
            (source.connecting, self.events.connecting),
            (source.connected, self.events.connected),
            (source.disconnected, self.events.disconnected),
            (source.reconnecting, self.events.reconnecting),
            (source.reconnect_failed, self.events.reconnect_failed),
            (source.reconnect_max_attempts, self.events.reconnect_max_attempts),
        )
        for upstream, downstream in pairs:
            upstream.subscribe(downstream.emit)

    def _on_connected(self, event: ConnectedEvent) -> None:
        if self._disconnected_at is None:
            return
        elapsed = int(time.time() * 1000) - self._disconnected_at
        logger.info("Reconnected to media server after %sms", elapsed)
        self._clear_release_timers()
        self._disconnected_at = None

    async def _on_disconnected(self, event: DisconnectedEvent) -> None:
        if not event.unexpected:
            return
        if self._should_preserve():
            self._preserve_sessions()
            return
        if self._sessions:
            logger.warning(
                "Connection lost with %s active sessions, stopping them", len(self._sessions)
            )
            await self.stop_all_sessions()


__all__ = ["RecordingManager"]
