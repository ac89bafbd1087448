"""FastAPI application exposing recording sessions over HTTP."""
from __future__ import annotations

import logging
from typing import Any, Literal

from aiortc import RTCSessionDescription
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import ManagerConfig, PauseType, SessionOptions
from .errors import (
    ConfigError,
    ErrorCode,
    KurentoConnectionError,
    RecordingError,
    SessionError,
)
from .events import IceCandidateEvent, PipelineReleasedEvent, SessionEndedEvent
from .manager import RecordingManager
from .session import RecordingSession
from .version import APP_VERSION

_CONFLICT_CODES = {
    ErrorCode.SESSION_ALREADY_EXISTS,
    ErrorCode.SESSION_INVALID_STATE,
    ErrorCode.SESSION_NOT_READY,
}


class SessionPayload(BaseModel):
    session_id: str | None = Field(default=None, max_length=128)
    media_profile: str | None = None
    quality: str | None = None
    min_bitrate: int | None = None
    max_bitrate: int | None = None
    recording_mode: str | None = None
    has_audio: bool | None = None
    width: int | None = None
    height: int | None = None
    frame_rate: int | None = None
    share_type: str | None = None
    file_path: str | None = None
    insert_blank_screen_on_pause: bool | None = None
    blank_screen_color: str | None = Field(default=None, max_length=64)


class OfferPayload(BaseModel):
    sdp: str
    type: Literal["offer"] = "offer"


class IceCandidatePayload(BaseModel):
    candidate: str
    sdpMid: str | None = None
    sdpMLineIndex: int | None = None


class PausePayload(BaseModel):
    pause_type: PauseType = PauseType.BOTH


class ResumePayload(BaseModel):
    resume_type: PauseType | None = None


class QualityPayload(BaseModel):
    min_bitrate: int | None = Field(default=None, gt=0)
    max_bitrate: int | None = Field(default=None, gt=0)
    frame_rate: int | None = Field(default=None, gt=0)


def _http_error(exc: RecordingError) -> HTTPException:
    if isinstance(exc, ConfigError):
        status = 400
    elif exc.code is ErrorCode.SESSION_NOT_FOUND:
        status = 404
    elif exc.code in _CONFLICT_CODES:
        status = 409
    elif isinstance(exc, KurentoConnectionError):
        status = 503
    else:
        status = 502
    return HTTPException(status_code=status, detail={"code": exc.code.value, "message": str(exc)})


def _describe(session: RecordingSession) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "state": session.state.value,
        "options": session.options.to_dict(),
        "paused_audio": session.paused_audio,
        "paused_video": session.paused_video,
        "total_paused_ms": session.total_paused_ms,
    }


def create_app(
    config: ManagerConfig | None = None,
    *,
    manager: RecordingManager | None = None,
) -> FastAPI:
    app = FastAPI(title="Kurento Recorder", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    if manager is None:
        manager = RecordingManager(config or ManagerConfig.from_env())
    app.state.manager = manager

    server_candidates: dict[str, list[dict[str, Any]]] = {}

    def _collect_candidate(event: IceCandidateEvent) -> None:
        server_candidates.setdefault(event.session_id, []).append(event.candidate.to_dict())

    def _forget_session(event: SessionEndedEvent | PipelineReleasedEvent) -> None:
        server_candidates.pop(event.session_id, None)

    manager.events.session_ended.subscribe(_forget_session)
    manager.events.pipeline_released.subscribe(_forget_session)

    def _session(session_id: str) -> RecordingSession:
        try:
            return manager.require_session(session_id)
        except SessionError as exc:
            raise _http_error(exc) from exc

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        logger.info("Shutting down recording manager")
        await manager.aclose()

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": APP_VERSION,
            "connected": manager.is_connected,
            "active_sessions": manager.active_session_count,
        }

    @app.post("/api/sessions")
    async def create_session(payload: SessionPayload) -> dict[str, Any]:
        try:
            session = await manager.create_session(
                SessionOptions(**payload.model_dump(exclude_none=True))
            )
        except RecordingError as exc:
            raise _http_error(exc) from exc
        session.events.ice_candidate.subscribe(_collect_candidate)
        server_candidates.setdefault(session.session_id, [])
        return _describe(session)

    @app.get("/api/sessions")
    async def list_sessions() -> dict[str, Any]:
        return {"sessions": manager.active_session_ids}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:
        session = _session(session_id)
        payload = _describe(session)
        payload["recorder_state"] = await session.get_recording_state()
        return payload

    @app.post("/api/sessions/{session_id}/offer")
    async def process_offer(session_id: str, payload: OfferPayload) -> dict[str, str]:
        session = _session(session_id)
        try:
            answer = await session.process_offer(
                RTCSessionDescription(sdp=payload.sdp, type=payload.type)
            )
        except RecordingError as exc:
            raise _http_error(exc) from exc
        return {"type": answer.type, "sdp": answer.sdp}

    @app.post("/api/sessions/{session_id}/ice-candidates")
    async def add_ice_candidate(session_id: str, payload: IceCandidatePayload) -> dict[str, bool]:
        session = _session(session_id)
        await session.add_ice_candidate(payload.model_dump())
        return {"accepted": True}

    @app.get("/api/sessions/{session_id}/ice-candidates")
    async def drain_ice_candidates(session_id: str) -> dict[str, Any]:
        _session(session_id)
        candidates = server_candidates.get(session_id, [])
        server_candidates[session_id] = []
        return {"candidates": candidates}

    @app.post("/api/sessions/{session_id}/start")
    async def start_recording(session_id: str) -> dict[str, Any]:
        session = _session(session_id)
        try:
            await session.start()
        except RecordingError as exc:
            raise _http_error(exc) from exc
        return _describe(session)

    @app.post("/api/sessions/{session_id}/pause")
    async def pause_recording(
        session_id: str, payload: PausePayload | None = None
    ) -> dict[str, Any]:
        session = _session(session_id)
        pause_type = payload.pause_type if payload is not None else PauseType.BOTH
        try:
            await session.pause(pause_type)
        except RecordingError as exc:
            raise _http_error(exc) from exc
        return _describe(session)

    @app.post("/api/sessions/{session_id}/resume")
    async def resume_recording(
        session_id: str, payload: ResumePayload | None = None
    ) -> dict[str, Any]:
        session = _session(session_id)
        resume_type = payload.resume_type if payload is not None else None
        try:
            await session.resume(resume_type)
        except RecordingError as exc:
            raise _http_error(exc) from exc
        return _describe(session)

    @app.post("/api/sessions/{session_id}/stop")
    async def stop_recording(session_id: str) -> dict[str, Any]:
        try:
            result = await manager.stop_session(session_id)
        except RecordingError as exc:
            raise _http_error(exc) from exc
        return result.to_dict()

    @app.post("/api/sessions/{session_id}/quality")
    async def update_quality(session_id: str, payload: QualityPayload) -> dict[str, Any]:
        session = _session(session_id)
        try:
            await session.set_quality(
                payload.min_bitrate, payload.max_bitrate, payload.frame_rate
            )
        except RecordingError as exc:
            raise _http_error(exc) from exc
        return _describe(session)

    @app.delete("/api/sessions/{session_id}")
    async def release_session(session_id: str) -> dict[str, bool]:
        try:
            await manager.release_session(session_id)
        except RecordingError as exc:
            raise _http_error(exc) from exc
        return {"released": True}

    return app


__all__ = [
    "IceCandidatePayload",
    "OfferPayload",
    "PausePayload",
    "QualityPayload",
    "ResumePayload",
    "SessionPayload",
    "create_app",
]
