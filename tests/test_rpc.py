from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import pytest

from kurento_recorder.rpc import ConnectionLostError, KurentoRpcClient, MediaServerError
from tests.fakes import run_async

URL = "ws://kms.test:8888/kurento"

Responder = Callable[[dict[str, Any]], "dict[str, Any] | None"]


class FakeSocket:
    """WebSocket stand-in fed by a responder function."""

    def __init__(self, responder: Responder) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._responder = responder
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, text: str) -> None:
        message = json.loads(text)
        self.sent.append(message)
        reply = self._responder(message)
        if reply is not None:
            self.push(reply)

    def push(self, message: dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def end(self) -> None:
        self._incoming.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self.end()

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


def kurento_responder(message: dict[str, Any]) -> dict[str, Any] | None:
    method = message["method"]
    reply: dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}
    if method == "create":
        reply["result"] = {"value": f"{message['params']['type']}-1", "sessionId": "kms-session"}
    elif method == "invoke" and message["params"]["operation"] == "explode":
        reply["error"] = {"code": 40101, "message": "Object not found", "data": {"type": "X"}}
    elif method == "invoke":
        reply["result"] = {"value": "STOP", "sessionId": "kms-session"}
    elif method == "subscribe":
        reply["result"] = {"value": "subscription-1", "sessionId": "kms-session"}
    else:
        reply["result"] = {"sessionId": "kms-session"}
    return reply


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


async def _client(
    responder: Responder = kurento_responder, **kwargs: Any
) -> tuple[KurentoRpcClient, list[FakeSocket]]:
    sockets: list[FakeSocket] = []

    async def connect(url: str, **_: Any) -> FakeSocket:
        assert url == URL
        socket = FakeSocket(responder)
        sockets.append(socket)
        return socket

    kwargs.setdefault("ping_interval", 0)
    client = KurentoRpcClient(URL, connect=connect, **kwargs)
    await client.open()
    return client, sockets


def test_create_returns_object_id_and_tracks_session() -> None:
    async def _test() -> None:
        client, sockets = await _client()

        object_id = await client.create("MediaPipeline")
        await client.invoke(object_id, "getState")

        first, second = sockets[0].sent
        assert object_id == "MediaPipeline-1"
        assert first["method"] == "create"
        assert first["params"] == {"type": "MediaPipeline", "constructorParams": {}, "properties": {}}
        assert "sessionId" not in first["params"]
        assert second["params"]["sessionId"] == "kms-session"
        assert client.session_id == "kms-session"
        await client.close()

    run_async(_test())


def test_invoke_returns_value_and_omits_empty_params() -> None:
    async def _test() -> None:
        client, sockets = await _client()

        state = await client.invoke("recorder-1", "getState")
        await client.invoke("webrtc-1", "processOffer", {"offer": "v=0"})

        assert state == "STOP"
        assert "operationParams" not in sockets[0].sent[0]["params"]
        assert sockets[0].sent[1]["params"]["operationParams"] == {"offer": "v=0"}
        await client.close()

    run_async(_test())


def test_error_payload_raises_media_server_error() -> None:
    async def _test() -> None:
        client, _ = await _client()
        with pytest.raises(MediaServerError) as excinfo:
            await client.invoke("missing-1", "explode")
        assert excinfo.value.code == 40101
        assert excinfo.value.data == {"type": "X"}
        assert "Object not found" in str(excinfo.value)
        await client.close()

    run_async(_test())


def test_events_are_dispatched_to_subscribers() -> None:
    async def _test() -> None:
        client, sockets = await _client()
        received: list[dict[str, Any]] = []

        subscription = await client.subscribe("webrtc-1", "IceCandidateFound", received.append)
        sockets[0].push(
            {
                "jsonrpc": "2.0",
                "method": "onEvent",
                "params": {
                    "value": {
                        "object": "webrtc-1",
                        "type": "IceCandidateFound",
                        "data": {"candidate": {"candidate": "candidate:1"}},
                    }
                },
            }
        )
        sockets[0].push(
            {
                "jsonrpc": "2.0",
                "method": "onEvent",
                "params": {"value": {"object": "other-1", "type": "IceCandidateFound"}},
            }
        )
        await _settle()

        assert subscription == "subscription-1"
        assert received == [{"candidate": {"candidate": "candidate:1"}}]
        await client.close()

    run_async(_test())


def test_malformed_messages_are_ignored() -> None:
    async def _test() -> None:
        client, sockets = await _client()
        sockets[0]._incoming.put_nowait("{not json")
        await _settle()
        assert client.is_open
        assert await client.invoke("recorder-1", "getState") == "STOP"
        await client.close()

    run_async(_test())


def test_socket_loss_fails_pending_requests_and_notifies() -> None:
    async def _test() -> None:
        client, sockets = await _client(responder=lambda message: None)
        lost: list = []
        client.on_connection_lost = lost.append

        pending = asyncio.ensure_future(client.invoke("recorder-1", "getState"))
        await _settle()
        sockets[0].end()

        with pytest.raises(ConnectionLostError):
            await pending
        assert lost == [None]
        assert not client.is_open
        with pytest.raises(ConnectionLostError):
            await client.create("MediaPipeline")

    run_async(_test())


def test_close_does_not_report_a_lost_connection() -> None:
    async def _test() -> None:
        client, sockets = await _client()
        lost: list = []
        client.on_connection_lost = lost.append

        await client.close()
        await _settle()

        assert sockets[0].closed
        assert lost == []
        assert not client.is_open

    run_async(_test())


def test_reopen_resumes_server_session() -> None:
    async def _test() -> None:
        client, sockets = await _client()
        await client.create("MediaPipeline")
        await client.close()

        await client.open()

        resume = sockets[1].sent[0]
        assert resume["method"] == "connect"
        assert resume["params"] == {"sessionId": "kms-session"}
        assert client.session_id == "kms-session"
        await client.close()

    run_async(_test())


def test_unanswered_request_times_out() -> None:
    async def _test() -> None:
        client, _ = await _client(responder=lambda message: None, request_timeout=0.01)
        with pytest.raises(MediaServerError) as excinfo:
            await client.invoke("recorder-1", "getState")
        assert "did not answer" in str(excinfo.value)
        await client.close()

    run_async(_test())
