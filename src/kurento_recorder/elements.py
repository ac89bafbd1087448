"""Handles for media server objects and the capabilities they expose."""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable

from .rpc import MediaServerClient


class MediaKind(str, Enum):
    """Media type selector for element connections."""

    AUDIO = "AUDIO"
    VIDEO = "VIDEO"


# ----------------------------------------------------------------------
# Capabilities
# ----------------------------------------------------------------------
@runtime_checkable
class Releasable(Protocol):
    async def release(self) -> None: ...


@runtime_checkable
class Connectable(Protocol):
    @property
    def id(self) -> str: ...

    async def connect(self, sink: "Connectable", kind: MediaKind | None = None) -> None: ...

    async def disconnect(self, sink: "Connectable", kind: MediaKind | None = None) -> None: ...


@runtime_checkable
class Recordable(Protocol):
    async def record(self) -> None: ...

    async def stop(self) -> None: ...

    async def get_state(self) -> str: ...


@runtime_checkable
class NegotiableEndpoint(Protocol):
    async def process_offer(self, offer: str) -> str: ...

    async def gather_candidates(self) -> None: ...

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None: ...

    async def set_min_video_send_bandwidth(self, kbps: int) -> None: ...

    async def set_max_video_send_bandwidth(self, kbps: int) -> None: ...

    async def on_ice_candidate_found(self, handler: Callable[[dict[str, Any]], None]) -> None: ...


@runtime_checkable
class IngressEndpoint(Connectable, NegotiableEndpoint, Releasable, Protocol):
    """Peer-facing endpoint that feeds the recorder."""


@runtime_checkable
class RecordingSink(Connectable, Recordable, Releasable, Protocol):
    """Element that writes the media it receives."""


# ----------------------------------------------------------------------
# Concrete server objects
# ----------------------------------------------------------------------
class MediaObject:
    """A server side object addressed by its id."""

    type_name = "MediaObject"

    def __init__(self, client: MediaServerClient, object_id: str) -> None:
        self._client = client
        self._id = object_id
        self._released = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._id}>"

    @property
    def id(self) -> str:
        return self._id

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        await self._client.release(self._id)
        self._released = True

    async def _invoke(self, operation: str, params: dict[str, Any] | None = None) -> Any:
        return await self._client.invoke(self._id, operation, params)


class MediaElement(MediaObject):
    """Pipeline element that can be wired to other elements."""

    type_name = "MediaElement"

    async def connect(self, sink: Connectable, kind: MediaKind | None = None) -> None:
        params: dict[str, Any] = {"sink": sink.id}
        if kind is not None:
            params["mediaType"] = MediaKind(kind).value
        await self._invoke("connect", params)

    async def disconnect(self, sink: Connectable, kind: MediaKind | None = None) -> None:
        params: dict[str, Any] = {"sink": sink.id}
        if kind is not None:
            params["mediaType"] = MediaKind(kind).value
        await self._invoke("disconnect", params)


class PassThrough(MediaElement):
    type_name = "PassThrough"


class RecorderEndpoint(MediaElement):
    type_name = "RecorderEndpoint"

    async def record(self) -> None:
        await self._invoke("record")

    async def stop(self) -> None:
        await self._invoke("stop")

    async def get_state(self) -> str:
        state = await self._invoke("getState")
        return str(state) if state is not None else "UNKNOWN"


class WebRtcEndpoint(MediaElement):
    type_name = "WebRtcEndpoint"

    async def process_offer(self, offer: str) -> str:
        answer = await self._invoke("processOffer", {"offer": offer})
        return str(answer)

    async def gather_candidates(self) -> None:
        await self._invoke("gatherCandidates")

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        payload = {"__module__": "kurento", "__type__": "IceCandidate", **candidate}
        await self._invoke("addIceCandidate", {"candidate": payload})

    async def set_min_video_send_bandwidth(self, kbps: int) -> None:
        await self._invoke("setMinVideoSendBandwidth", {"minVideoSendBandwidth": int(kbps)})

    async def set_max_video_send_bandwidth(self, kbps: int) -> None:
        await self._invoke("setMaxVideoSendBandwidth", {"maxVideoSendBandwidth": int(kbps)})

    async def on_ice_candidate_found(self, handler: Callable[[dict[str, Any]], None]) -> None:
        def _forward(data: dict[str, Any]) -> None:
            candidate = data.get("candidate")
            if isinstance(candidate, dict):
                handler(candidate)

        await self._client.subscribe(self._id, "IceCandidateFound", _forward)


class PipelineHandle(MediaObject):
    """The server side ``MediaPipeline`` object."""

    type_name = "MediaPipeline"

    async def create(self, type_name: str, params: dict[str, Any] | None = None) -> MediaElement:
        constructor_params = {"mediaPipeline": self._id, **(params or {})}
        object_id = await self._client.create(type_name, constructor_params)
        element_type = ELEMENT_TYPES.get(type_name, MediaElement)
        return element_type(self._client, object_id)


ELEMENT_TYPES: dict[str, type[MediaElement]] = {
    PassThrough.type_name: PassThrough,
    RecorderEndpoint.type_name: RecorderEndpoint,
    WebRtcEndpoint.type_name: WebRtcEndpoint,
}


async def create_pipeline(
    client: MediaServerClient, params: dict[str, Any] | None = None
) -> PipelineHandle:
    object_id = await client.create(PipelineHandle.type_name, params or {})
    return PipelineHandle(client, object_id)


__all__ = [
    "Connectable",
    "ELEMENT_TYPES",
    "IngressEndpoint",
    "MediaElement",
    "MediaKind",
    "MediaObject",
    "NegotiableEndpoint",
    "PassThrough",
    "PipelineHandle",
    "RecorderEndpoint",
    "RecordingSink",
    "Recordable",
    "Releasable",
    "WebRtcEndpoint",
    "create_pipeline",
]
