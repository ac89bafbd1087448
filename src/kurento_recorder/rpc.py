"""Kurento Media Server JSON-RPC client over WebSocket."""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]


class MediaServerError(RuntimeError):
    """JSON-RPC error object returned by the media server."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data

    @classmethod
    def from_payload(cls, payload: Any) -> "MediaServerError":
        if not isinstance(payload, dict):
            return cls(str(payload))
        message = str(payload.get("message") or "Media server error")
        code = payload.get("code")
        return cls(message, code if isinstance(code, int) else None, payload.get("data"))


class ConnectionLostError(MediaServerError):
    """Raised for requests that cannot complete because the socket is gone."""


class MediaServerClient(Protocol):
    """Operations the server element handles need from a transport."""

    async def create(
        self,
        type_name: str,
        constructor_params: dict[str, Any] | None = None,
        properties: dict[str, Any] | None = None,
    ) -> str: ...

    async def invoke(
        self,
        object_id: str,
        operation: str,
        operation_params: dict[str, Any] | None = None,
    ) -> Any: ...

    async def release(self, object_id: str) -> None: ...

    async def subscribe(self, object_id: str, event_type: str, handler: EventHandler) -> str: ...


class KurentoRpcClient:
    """Speak the Kurento JSON-RPC 2.0 protocol over a single WebSocket.

    The client survives ``close``/``open`` cycles and keeps the server session
    id, so objects created before a connection drop can be reused after a
    reconnect when the server still holds them.
    """

    def __init__(
        self,
        url: str,
        *,
        request_timeout: float = 30.0,
        ping_interval: float = 240.0,
        connect: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        self.url = url
        self._request_timeout = request_timeout
        self._ping_interval = ping_interval
        self._connect = connect or websockets.connect
        self._ws: Any | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._ping_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._ids = itertools.count(1)
        self._session_id: str | None = None
        self._handlers: dict[tuple[str, str], list[EventHandler]] = {}
        self._closing = False
        self.on_connection_lost: Callable[[BaseException | None], None] | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self._ws is not None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def open(self) -> None:
        if self._ws is not None:
            return
        self._closing = False
        self._ws = await self._connect(self.url, max_size=None)
        loop = asyncio.get_running_loop()
        self._reader_task = loop.create_task(self._reader(self._ws))
        if self._session_id is not None:
            try:
                await self._request("connect", {})
            except MediaServerError as exc:
                logger.warning(
                    "Media server session %s could not be resumed: %s", self._session_id, exc
                )
                self._session_id = None
                self._handlers.clear()
            else:
                logger.info("Resumed media server session %s", self._session_id)
        if self._ping_interval > 0:
            self._ping_task = loop.create_task(self._keepalive())

    async def close(self) -> None:
        self._closing = True
        ping_task = self._ping_task
        self._ping_task = None
        if ping_task is not None and ping_task is not asyncio.current_task():
            ping_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ping_task
        ws = self._ws
        self._ws = None
        reader = self._reader_task
        self._reader_task = None
        try:
            if ws is not None:
                await ws.close()
        finally:
            if reader is not None:
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
            self._fail_pending(ConnectionLostError("Connection to media server closed"))

    # ------------------------------------------------------------------
    # Media server operations
    # ------------------------------------------------------------------
    async def create(
        self,
        type_name: str,
        constructor_params: dict[str, Any] | None = None,
        properties: dict[str, Any] | None = None,
    ) -> str:
        params: dict[str, Any] = {
            "type": type_name,
            "constructorParams": constructor_params or {},
            "properties": properties or {},
        }
        result = await self._request("create", params)
        return str(result["value"])

    async def invoke(
        self,
        object_id: str,
        operation: str,
        operation_params: dict[str, Any] | None = None,
    ) -> Any:
        params: dict[str, Any] = {"object": object_id, "operation": operation}
        if operation_params:
            params["operationParams"] = operation_params
        result = await self._request("invoke", params)
        if isinstance(result, dict):
            return result.get("value")
        return None

    async def release(self, object_id: str) -> None:
        await self._request("release", {"object": object_id})
        for key in [key for key in self._handlers if key[0] == object_id]:
            del self._handlers[key]

    async def subscribe(self, object_id: str, event_type: str, handler: EventHandler) -> str:
        result = await self._request("subscribe", {"object": object_id, "type": event_type})
        self._handlers.setdefault((object_id, event_type), []).append(handler)
        return str(result.get("value", "")) if isinstance(result, dict) else ""

    async def ping(self) -> None:
        await self._request("ping", {"interval": int(self._ping_interval * 1000)})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        ws = self._ws
        if ws is None:
            raise ConnectionLostError("Not connected to media server")
        request_id = next(self._ids)
        if self._session_id is not None:
            params = {**params, "sessionId": self._session_id}
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(json.dumps(message))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise MediaServerError(
                f"Media server did not answer {method} within {self._request_timeout:g}s"
            ) from exc
        except ConnectionClosed as exc:
            raise ConnectionLostError(f"Connection lost while sending {method}: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _reader(self, ws: Any) -> None:
        error: BaseException | None = None
        try:
            async for raw in ws:
                self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            error = exc
        except Exception as exc:  # pragma: no cover - logging only
            logger.exception("Media server reader terminated unexpectedly")
            error = exc
        self._connection_lost(ws, error)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed media server message: %r", raw)
            return
        if not isinstance(message, dict):
            return
        if message.get("method") == "onEvent":
            self._dispatch_event(message.get("params") or {})
            return
        request_id = message.get("id")
        future = self._pending.get(request_id) if isinstance(request_id, int) else None
        if future is None or future.done():
            return
        if "error" in message:
            future.set_exception(MediaServerError.from_payload(message["error"]))
            return
        result = message.get("result")
        if isinstance(result, dict) and result.get("sessionId"):
            self._session_id = str(result["sessionId"])
        future.set_result(result)

    def _dispatch_event(self, params: dict[str, Any]) -> None:
        value = params.get("value") or {}
        object_id = value.get("object")
        event_type = value.get("type")
        data = value.get("data") or {}
        for handler in list(self._handlers.get((object_id, event_type), ())):
            try:
                handler(data)
            except Exception:
                logger.exception("Handler for %s on %s failed", event_type, object_id)

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            try:
                await self.ping()
            except MediaServerError as exc:
                logger.warning("Media server keep-alive failed: %s", exc)
                ws = self._ws
                if ws is not None:
                    self._ping_task = None
                    with contextlib.suppress(Exception):
                        await ws.close()
                    self._connection_lost(ws, exc)
                return

    def _connection_lost(self, ws: Any, error: BaseException | None) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._reader_task = None
        ping_task = self._ping_task
        self._ping_task = None
        if ping_task is not None and ping_task is not asyncio.current_task():
            ping_task.cancel()
        self._fail_pending(ConnectionLostError("Connection to media server lost"))
        if self._closing:
            return
        logger.warning("Connection to media server at %s lost: %s", self.url, error)
        callback = self.on_connection_lost
        if callback is not None:
            callback(error)

    def _fail_pending(self, error: BaseException) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)


__all__ = [
    "ConnectionLostError",
    "KurentoRpcClient",
    "MediaServerClient",
    "MediaServerError",
]
