"""Server side media pipeline with a local model of its connections."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .elements import (
    Connectable,
    MediaElement,
    MediaKind,
    PassThrough,
    PipelineHandle,
    RecorderEndpoint,
    WebRtcEndpoint,
    create_pipeline,
)
from .errors import ErrorCode, MediaError
from .rpc import MediaServerClient, MediaServerError

logger = logging.getLogger(__name__)

_ALL_KINDS: tuple[MediaKind, ...] = (MediaKind.AUDIO, MediaKind.VIDEO)


@dataclass(frozen=True, slots=True)
class Edge:
    """A single media flow from ``source`` to ``sink`` for one media kind."""

    source: str
    sink: str
    kind: MediaKind


def _kinds(kind: MediaKind | str | None) -> tuple[MediaKind, ...]:
    if kind is None:
        return _ALL_KINDS
    return (MediaKind(kind),)


class MediaPipeline:
    """One server processing graph, owned by exactly one session.

    Element connections are mirrored in :attr:`edges`. A sink accepts a single
    source per media kind, so connecting a new source replaces the previous
    edge for that kind.
    """

    def __init__(self, client: MediaServerClient, *, name: str | None = None) -> None:
        self._client = client
        self._name = name or "pipeline"
        self._handle: PipelineHandle | None = None
        self._elements: dict[str, MediaElement] = {}
        self._edges: set[Edge] = set()
        self._released = False

    def __repr__(self) -> str:
        return f"<MediaPipeline {self._name} id={self.id}>"

    @property
    def id(self) -> str | None:
        return self._handle.id if self._handle is not None else None

    @property
    def is_initialised(self) -> bool:
        return self._handle is not None and not self._released

    @property
    def released(self) -> bool:
        return self._released

    @property
    def edges(self) -> frozenset[Edge]:
        return frozenset(self._edges)

    async def initialize(self, params: dict[str, Any] | None = None) -> None:
        if self._handle is not None:
            logger.debug("Pipeline %s already initialised", self._name)
            return
        if self._released:
            raise MediaError(
                f"Pipeline {self._name} has been released", ErrorCode.PIPELINE_NOT_READY
            )
        try:
            self._handle = await create_pipeline(self._client, params)
        except MediaServerError as exc:
            logger.error("Error creating media pipeline %s: %s", self._name, exc)
            raise MediaError(
                f"Failed to create media pipeline: {exc}", ErrorCode.PIPELINE_CREATION_FAILED
            ) from exc
        logger.info("Media pipeline %s created with id %s", self._name, self._handle.id)

    # ------------------------------------------------------------------
    # Element creation
    # ------------------------------------------------------------------
    async def create_element(
        self,
        type_name: str,
        params: dict[str, Any] | None = None,
        *,
        name: str | None = None,
        error_code: ErrorCode = ErrorCode.ELEMENT_CREATION_FAILED,
    ) -> MediaElement:
        handle = self._ensure_pipeline()
        logger.debug("Creating %s in pipeline %s", type_name, self._name)
        try:
            element = await handle.create(type_name, params)
        except MediaServerError as exc:
            logger.error("Error creating %s: %s", type_name, exc)
            raise MediaError(f"Failed to create {type_name}: {exc}", error_code) from exc
        if name:
            self._elements[name] = element
        return element

    async def create_webrtc_endpoint(
        self, params: dict[str, Any] | None = None, *, name: str | None = None
    ) -> WebRtcEndpoint:
        element = await self.create_element(
            WebRtcEndpoint.type_name,
            params,
            name=name,
            error_code=ErrorCode.ENDPOINT_CREATION_FAILED,
        )
        assert isinstance(element, WebRtcEndpoint)
        return element

    async def create_recorder_endpoint(
        self, params: dict[str, Any], *, name: str | None = None
    ) -> RecorderEndpoint:
        element = await self.create_element(
            RecorderEndpoint.type_name,
            params,
            name=name,
            error_code=ErrorCode.ENDPOINT_CREATION_FAILED,
        )
        assert isinstance(element, RecorderEndpoint)
        return element

    async def create_blank_video_element(self, color: str = "black") -> PassThrough:
        """Create the placeholder video source used while video is paused.

        Kurento has no stock colour generator, so a ``PassThrough`` with no
        upstream source stands in for the blank frame; the colour is kept for
        logging only.
        """

        element = await self.create_element(PassThrough.type_name, name="blank-screen")
        logger.debug("Blank video element %s created (colour %s)", element.id, color)
        assert isinstance(element, PassThrough)
        return element

    def get_element(self, name: str) -> MediaElement | None:
        return self._elements.get(name)

    def forget_element(self, element: Connectable) -> None:
        """Drop *element* from the registry and the edge model."""

        for key in [key for key, value in self._elements.items() if value is element]:
            del self._elements[key]
        self._edges = {
            edge for edge in self._edges if element.id not in (edge.source, edge.sink)
        }

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    async def connect(
        self,
        source: Connectable,
        sink: Connectable,
        kind: MediaKind | str | None = None,
    ) -> None:
        self._ensure_pipeline()
        kinds = _kinds(kind)
        label = kinds[0].value if kind is not None else "AUDIO+VIDEO"
        logger.debug("Connecting %s -> %s (%s)", source, sink, label)
        try:
            await source.connect(sink, kinds[0] if kind is not None else None)
        except MediaServerError as exc:
            logger.error("Error connecting %s -> %s: %s", source, sink, exc)
            raise MediaError(
                f"Failed to connect elements: {exc}", ErrorCode.MEDIA_PIPELINE_ERROR
            ) from exc
        for media_kind in kinds:
            self._edges = {
                edge
                for edge in self._edges
                if not (edge.sink == sink.id and edge.kind is media_kind)
            }
            self._edges.add(Edge(source.id, sink.id, media_kind))

    async def disconnect(
        self,
        source: Connectable,
        sink: Connectable,
        kind: MediaKind | str | None = None,
    ) -> bool:
        """Remove the edge(s) from *source* to *sink*.

        Returns ``False`` without contacting the server when no matching edge
        exists.
        """

        self._ensure_pipeline()
        kinds = _kinds(kind)
        existing = {Edge(source.id, sink.id, media_kind) for media_kind in kinds} & self._edges
        if not existing:
            logger.debug("No %s edge %s -> %s to disconnect", kind or "media", source, sink)
            return False
        try:
            await source.disconnect(sink, kinds[0] if kind is not None else None)
        except MediaServerError as exc:
            raise MediaError(
                f"Failed to disconnect elements: {exc}", ErrorCode.MEDIA_CONNECTION_ERROR
            ) from exc
        self._edges -= existing
        return True

    def sources_of(self, sink: Connectable, kind: MediaKind | str) -> list[str]:
        media_kind = MediaKind(kind)
        return sorted(
            edge.source for edge in self._edges if edge.sink == sink.id and edge.kind is media_kind
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------
    async def release(self) -> None:
        handle = self._handle
        if self._released or handle is None:
            logger.debug("Pipeline %s already released or not created", self._name)
            return
        logger.info("Releasing media pipeline %s and all elements", self._name)
        try:
            await handle.release()
        except MediaServerError as exc:
            logger.error("Error releasing media pipeline %s: %s", self._name, exc)
            raise MediaError(
                f"Failed to release media pipeline: {exc}", ErrorCode.PIPELINE_RELEASE_FAILED
            ) from exc
        self._handle = None
        self._elements.clear()
        self._edges.clear()
        self._released = True
        logger.info("Media pipeline %s released", self._name)

    def _ensure_pipeline(self) -> PipelineHandle:
        if self._handle is None or self._released:
            logger.error("Attempt to use released or uninitialised pipeline %s", self._name)
            raise MediaError(
                "Pipeline is not initialised or has been released",
                ErrorCode.PIPELINE_NOT_READY,
            )
        return self._handle


__all__ = ["Edge", "MediaPipeline"]
