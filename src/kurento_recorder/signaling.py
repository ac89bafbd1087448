"""Offer/answer and ICE exchange with the ingress endpoint."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from aiortc import RTCSessionDescription

from .elements import NegotiableEndpoint
from .errors import ErrorCode, SignalingError
from .events import EventChannel
from .rpc import MediaServerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IceCandidate:
    """A network reachability option in the browser's ``RTCIceCandidateInit`` shape."""

    candidate: str
    sdp_mid: str | None = None
    sdp_m_line_index: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.candidate, str):
            raise SignalingError("ICE candidate must be a string", ErrorCode.WEBRTC_ICE_ERROR)
        if self.sdp_m_line_index is not None:
            object.__setattr__(self, "sdp_m_line_index", int(self.sdp_m_line_index))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "IceCandidate":
        try:
            candidate = payload["candidate"]
        except KeyError as exc:
            raise SignalingError(
                "ICE candidate payload is missing 'candidate'", ErrorCode.WEBRTC_ICE_ERROR
            ) from exc
        return cls(
            candidate=candidate,
            sdp_mid=payload.get("sdpMid"),
            sdp_m_line_index=payload.get("sdpMLineIndex"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_m_line_index,
        }


class SignalingHandler:
    """Negotiate the peer connection on behalf of one session.

    Candidates received before the ingress endpoint exists are buffered and
    applied, in arrival order, as soon as :meth:`set_endpoint` attaches it.
    Candidates gathered by the media server are published on
    :attr:`candidates`.
    """

    def __init__(self) -> None:
        self._endpoint: NegotiableEndpoint | None = None
        self._pending: list[IceCandidate] = []
        self.candidates: EventChannel[IceCandidate] = EventChannel("ice-candidate")

    @property
    def has_endpoint(self) -> bool:
        return self._endpoint is not None

    @property
    def pending_candidates(self) -> list[IceCandidate]:
        return list(self._pending)

    async def set_endpoint(self, endpoint: NegotiableEndpoint) -> None:
        try:
            await endpoint.on_ice_candidate_found(self._on_candidate_found)
        except MediaServerError as exc:
            logger.warning("Unable to subscribe to ICE candidates: %s", exc)
        # Candidates arriving during the flush are buffered behind it.
        while self._pending:
            await self._flush_pending(endpoint)
        self._endpoint = endpoint
        logger.debug("WebRTC endpoint set")

    def _on_candidate_found(self, payload: dict[str, Any]) -> None:
        try:
            candidate = IceCandidate.from_dict(payload)
        except SignalingError as exc:
            logger.warning("Ignoring malformed ICE candidate from media server: %s", exc)
            return
        logger.debug("New ICE candidate found: %s", candidate.candidate)
        self.candidates.emit(candidate)

    async def _flush_pending(self, endpoint: NegotiableEndpoint) -> None:
        pending, self._pending = self._pending, []
        logger.debug("Applying %s pending ICE candidates", len(pending))
        for candidate in pending:
            try:
                await endpoint.add_ice_candidate(candidate.to_dict())
            except MediaServerError as exc:
                logger.error("Error applying pending ICE candidate %s: %s", candidate.candidate, exc)

    def _require_endpoint(self, action: str, code: ErrorCode) -> NegotiableEndpoint:
        if self._endpoint is None:
            raise SignalingError(f"WebRTC endpoint not set, cannot {action}", code)
        return self._endpoint

    async def process_offer(self, offer: str | RTCSessionDescription) -> RTCSessionDescription:
        endpoint = self._require_endpoint("process offer", ErrorCode.WEBRTC_OFFER_ERROR)
        sdp = offer if isinstance(offer, str) else offer.sdp
        logger.debug("Processing SDP offer")
        try:
            answer = await endpoint.process_offer(sdp)
        except MediaServerError as exc:
            logger.error("Error processing SDP offer: %s", exc)
            raise SignalingError(
                f"Error processing SDP offer: {exc}", ErrorCode.WEBRTC_OFFER_ERROR
            ) from exc
        logger.debug("SDP answer generated")
        return RTCSessionDescription(sdp=answer, type="answer")

    async def gather_candidates(self) -> None:
        endpoint = self._require_endpoint("gather candidates", ErrorCode.WEBRTC_ICE_ERROR)
        try:
            await endpoint.gather_candidates()
        except MediaServerError as exc:
            logger.error("Error gathering ICE candidates: %s", exc)
            raise SignalingError(
                f"Error gathering ICE candidates: {exc}", ErrorCode.WEBRTC_ICE_ERROR
            ) from exc
        logger.debug("ICE candidate gathering initiated")

    async def add_ice_candidate(self, candidate: IceCandidate | Mapping[str, Any]) -> None:
        if not isinstance(candidate, IceCandidate):
            candidate = IceCandidate.from_dict(candidate)
        endpoint = self._endpoint
        if endpoint is None:
            logger.debug("WebRTC endpoint not ready, storing ICE candidate for later")
            self._pending.append(candidate)
            return
        try:
            await endpoint.add_ice_candidate(candidate.to_dict())
        except MediaServerError as exc:
            logger.error("Error adding ICE candidate: %s", exc)
            raise SignalingError(
                f"Error adding ICE candidate: {exc}", ErrorCode.WEBRTC_ICE_ERROR
            ) from exc

    async def set_quality_parameters(
        self, min_bitrate: int | None, max_bitrate: int | None
    ) -> None:
        endpoint = self._require_endpoint(
            "set quality parameters", ErrorCode.WEBRTC_BANDWIDTH_ERROR
        )
        logger.debug("Setting bandwidth bounds min=%s max=%s", min_bitrate, max_bitrate)
        try:
            if min_bitrate and min_bitrate > 0:
                await endpoint.set_min_video_send_bandwidth(min_bitrate)
            if max_bitrate and max_bitrate > 0:
                await endpoint.set_max_video_send_bandwidth(max_bitrate)
        except MediaServerError as exc:
            logger.error("Error setting quality parameters: %s", exc)
            raise SignalingError(
                f"Error setting quality parameters: {exc}", ErrorCode.WEBRTC_BANDWIDTH_ERROR
            ) from exc

    def detach(self) -> None:
        self._endpoint = None
        self._pending.clear()


__all__ = ["IceCandidate", "SignalingHandler"]
