"""Supervision of the single connection to the media server."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from enum import Enum
from typing import Callable

from .config import ManagerConfig
from .errors import ErrorCode, KurentoConnectionError
from .events import (
    ConnectedEvent,
    ConnectingEvent,
    ConnectorEvents,
    DisconnectedEvent,
    ReconnectExhaustedEvent,
    ReconnectFailedEvent,
    ReconnectingEvent,
)
from .rpc import KurentoRpcClient

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _default_jitter() -> float:
    return 0.5 + random.random() * 0.5


def compute_backoff_delay_ms(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    jitter: float = 1.0,
) -> int:
    """Return the exponential backoff delay for the *attempt*-th retry."""

    exponent = max(0, attempt - 1)
    delay = min(float(max_delay_ms), float(base_delay_ms) * (2 ** exponent))
    return max(0, int(delay * jitter))


class KurentoConnector:
    """Own the media server connection and retry it with exponential backoff."""

    def __init__(
        self,
        config: ManagerConfig,
        *,
        client: KurentoRpcClient | None = None,
        jitter: Callable[[], float] = _default_jitter,
    ) -> None:
        self._config = config
        self._client = client or KurentoRpcClient(
            config.kurento_url,
            request_timeout=config.request_timeout_s,
            ping_interval=config.ping_interval_s,
        )
        self._client.on_connection_lost = self._on_connection_lost
        self._jitter = jitter
        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._retry_task: asyncio.Task[None] | None = None
        self.events = ConnectorEvents()
        logger.debug("Initialised connector for %s", config.kurento_url)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def client(self) -> KurentoRpcClient | None:
        """Return the RPC client while connected, ``None`` otherwise."""

        return self._client if self._state is ConnectionState.CONNECTED else None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def reconnect_delay_ms(self, attempt: int) -> int:
        return compute_backoff_delay_ms(
            attempt,
            self._config.reconnect_base_delay_ms,
            self._config.reconnect_max_delay_ms,
            self._jitter(),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def connect(self) -> KurentoRpcClient:
        """Connect to the media server, or return the live client."""

        if self._state is ConnectionState.CONNECTED:
            logger.debug("Already connected to media server")
            return self._client
        if self._state is ConnectionState.CONNECTING:
            raise KurentoConnectionError(
                "Connection to media server is already in progress",
                ErrorCode.CONNECTION_IN_PROGRESS,
            )
        try:
            return await self._open(retrying=False)
        except KurentoConnectionError:
            if self._should_retry() and not self.reconnect_pending:
                self._schedule_reconnect()
            raise

    async def disconnect(self) -> None:
        """Cancel pending retries and close the connection; never raises."""

        await self._cancel_retry()
        self._attempts = 0
        if self._state is ConnectionState.DISCONNECTED and not self._client.is_open:
            logger.debug("Not connected to media server")
            return
        logger.info("Disconnecting from media server")
        try:
            await self._client.close()
        except Exception as exc:
            logger.error("Error disconnecting from media server: %s", exc)
        finally:
            self._state = ConnectionState.DISCONNECTED
            self.events.disconnected.emit(DisconnectedEvent(self._config.kurento_url))
        logger.info("Disconnected from media server")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _open(self, *, retrying: bool) -> KurentoRpcClient:
        url = self._config.kurento_url
        self._state = ConnectionState.CONNECTING
        self.events.connecting.emit(ConnectingEvent(url, self._attempts if retrying else 0))
        logger.info("Connecting to media server at %s", url)
        try:
            await self._client.open()
        except Exception as exc:
            self._state = ConnectionState.DISCONNECTED
            logger.error("Failed to connect to media server at %s: %s", url, exc)
            raise KurentoConnectionError(
                f"Failed to connect to media server at {url}: {exc}",
                ErrorCode.CONNECTION_FAILED,
            ) from exc
        self._state = ConnectionState.CONNECTED
        self._attempts = 0
        logger.info("Connected to media server at %s", url)
        self.events.connected.emit(ConnectedEvent(url, reconnected=retrying))
        return self._client

    def _should_retry(self) -> bool:
        return self._config.reconnect and self._attempts < self._config.reconnect_attempts

    def _schedule_reconnect(self) -> None:
        self._attempts += 1
        attempt = self._attempts
        delay_ms = self.reconnect_delay_ms(attempt)
        logger.info("Scheduling reconnection attempt %s in %sms", attempt, delay_ms)
        self.events.reconnecting.emit(ReconnectingEvent(attempt, delay_ms))
        loop = asyncio.get_running_loop()
        self._retry_task = loop.create_task(self._retry_after(delay_ms / 1000.0))

    async def _retry_after(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        attempt = self._attempts
        if self._state is not ConnectionState.DISCONNECTED:
            self._retry_task = None
            return
        logger.info("Reconnection attempt %s", attempt)
        try:
            await self._open(retrying=True)
        except KurentoConnectionError as exc:
            logger.error("Reconnection attempt %s failed: %s", attempt, exc)
            self.events.reconnect_failed.emit(ReconnectFailedEvent(attempt, exc))
            if self._should_retry():
                self._schedule_reconnect()
            else:
                self._retry_task = None
                logger.error("Max reconnection attempts reached (%s)", attempt)
                self.events.reconnect_max_attempts.emit(ReconnectExhaustedEvent(attempt))
            return
        self._retry_task = None
        logger.info("Reconnected to media server")

    async def _cancel_retry(self) -> None:
        task = self._retry_task
        self._retry_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _on_connection_lost(self, error: BaseException | None) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        self._state = ConnectionState.DISCONNECTED
        logger.warning("Lost connection to media server: %s", error)
        self.events.disconnected.emit(DisconnectedEvent(self._config.kurento_url, unexpected=True))
        if self._should_retry() and not self.reconnect_pending:
            self._schedule_reconnect()


__all__ = ["ConnectionState", "KurentoConnector", "compute_backoff_delay_ms"]
