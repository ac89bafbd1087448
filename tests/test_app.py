import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from kurento_recorder.app import create_app
from kurento_recorder.config import ManagerConfig
from kurento_recorder.connector import KurentoConnector
from kurento_recorder.manager import RecordingManager

from tests.fakes import FakeMediaServer

OFFER = "v=0\r\no=- 1 1 IN IP4 127.0.0.1\r\n"


@pytest.fixture
def media_server() -> FakeMediaServer:
    return FakeMediaServer()


@pytest.fixture
def client(manager_config: ManagerConfig, media_server: FakeMediaServer) -> TestClient:
    connector = KurentoConnector(manager_config, client=media_server)
    manager = RecordingManager(manager_config, connector=connector)
    app = create_app(manager=manager)
    with TestClient(app) as test_client:
        yield test_client


def _create(client: TestClient, session_id: str = "s1", **options) -> dict:
    response = client.post("/api/sessions", json={"session_id": session_id, **options})
    assert response.status_code == 200, response.text
    return response.json()


def test_health_reports_connection_and_sessions(client: TestClient) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["connected"] is False
    assert payload["active_sessions"] == 0


def test_create_session_and_reject_duplicates(client: TestClient) -> None:
    created = _create(client, quality="medium")
    assert created["session_id"] == "s1"
    assert created["state"] == "ready"
    assert created["options"]["max_bitrate"] == 2000

    duplicate = client.post("/api/sessions", json={"session_id": "s1"})
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["code"] == "SESSION_ALREADY_EXISTS"

    listing = client.get("/api/sessions")
    assert listing.json() == {"sessions": ["s1"]}
    assert client.get("/api/health").json()["connected"] is True


def test_unknown_session_is_not_found(client: TestClient) -> None:
    for response in (
        client.get("/api/sessions/missing"),
        client.post("/api/sessions/missing/start"),
        client.post("/api/sessions/missing/stop"),
        client.delete("/api/sessions/missing"),
    ):
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "SESSION_NOT_FOUND"


def test_full_recording_flow(client: TestClient, media_server: FakeMediaServer) -> None:
    _create(client)

    early = client.post("/api/sessions/s1/start")
    assert early.status_code == 409
    assert early.json()["detail"]["code"] == "SESSION_NOT_READY"

    answer = client.post("/api/sessions/s1/offer", json={"sdp": OFFER, "type": "offer"})
    assert answer.status_code == 200
    assert answer.json() == {"type": "answer", "sdp": media_server.answer}

    accepted = client.post(
        "/api/sessions/s1/ice-candidates",
        json={"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0},
    )
    assert accepted.json() == {"accepted": True}

    started = client.post("/api/sessions/s1/start")
    assert started.json()["state"] == "recording"

    paused = client.post("/api/sessions/s1/pause", json={"pause_type": "video-only"})
    assert paused.status_code == 200
    assert paused.json()["state"] == "paused"
    assert paused.json()["paused_video"] is True
    assert paused.json()["paused_audio"] is False

    resumed = client.post("/api/sessions/s1/resume", json={})
    assert resumed.json()["state"] == "recording"

    quality = client.post("/api/sessions/s1/quality", json={"max_bitrate": 5000})
    assert quality.status_code == 200
    assert quality.json()["options"]["max_bitrate"] == 5000

    detail = client.get("/api/sessions/s1")
    assert detail.json()["recorder_state"] == "STOP"

    stopped = client.post("/api/sessions/s1/stop")
    assert stopped.status_code == 200
    result = stopped.json()
    assert result["session_id"] == "s1"
    assert result["path"].endswith("recording_s1.webm")
    assert result["media_profile"] == "WEBM"
    assert set(result["timestamp"]) == {"start", "end"}
    assert client.get("/api/sessions").json() == {"sessions": []}


def test_invalid_quality_is_a_bad_request(client: TestClient) -> None:
    _create(client)
    client.post("/api/sessions/s1/offer", json={"sdp": OFFER})
    client.post("/api/sessions/s1/start")

    swapped = client.post(
        "/api/sessions/s1/quality", json={"min_bitrate": 4000, "max_bitrate": 1000}
    )
    assert swapped.status_code == 400
    assert swapped.json()["detail"]["code"] == "INVALID_PARAMETER"

    negative = client.post("/api/sessions/s1/quality", json={"frame_rate": -1})
    assert negative.status_code == 422


def test_unknown_quality_name_is_rejected(client: TestClient) -> None:
    response = client.post("/api/sessions", json={"quality": "cinematic"})
    assert response.status_code == 400


def test_connection_failure_maps_to_service_unavailable(
    client: TestClient, media_server: FakeMediaServer
) -> None:
    media_server.fail_open = 1
    response = client.post("/api/sessions", json={"session_id": "s1"})
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "CONNECTION_FAILED"


def test_server_candidates_are_drained(client: TestClient, media_server: FakeMediaServer) -> None:
    _create(client)
    client.post("/api/sessions/s1/offer", json={"sdp": OFFER})
    (endpoint_id,) = media_server.created("WebRtcEndpoint")

    media_server.fire(
        endpoint_id,
        "IceCandidateFound",
        {"candidate": {"candidate": "candidate:srv", "sdpMid": "0", "sdpMLineIndex": 0}},
    )

    first = client.get("/api/sessions/s1/ice-candidates").json()
    assert first == {
        "candidates": [{"candidate": "candidate:srv", "sdpMid": "0", "sdpMLineIndex": 0}]
    }
    assert client.get("/api/sessions/s1/ice-candidates").json() == {"candidates": []}


def test_delete_releases_session(client: TestClient, media_server: FakeMediaServer) -> None:
    _create(client)
    response = client.delete("/api/sessions/s1")
    assert response.json() == {"released": True}
    assert media_server.created("MediaPipeline")[0] in media_server.released
    assert client.get("/api/sessions/s1").status_code == 404
