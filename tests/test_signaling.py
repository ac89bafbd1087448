from __future__ import annotations

import pytest
from aiortc import RTCSessionDescription

from kurento_recorder.errors import ErrorCode, SignalingError
from kurento_recorder.pipeline import MediaPipeline
from kurento_recorder.rpc import MediaServerError
from kurento_recorder.signaling import IceCandidate, SignalingHandler
from tests.fakes import FakeMediaServer, run_async

OFFER = "v=0\r\no=- 1 1 IN IP4 127.0.0.1\r\n"


async def _endpoint(server: FakeMediaServer):
    pipeline = MediaPipeline(server)
    await pipeline.initialize()
    return await pipeline.create_webrtc_endpoint()


def test_ice_candidate_round_trips_browser_fields() -> None:
    payload = {
        "candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }
    candidate = IceCandidate.from_dict(payload)
    assert candidate.sdp_mid == "0"
    assert candidate.sdp_m_line_index == 0
    assert candidate.to_dict() == payload


def test_ice_candidate_requires_candidate_field() -> None:
    with pytest.raises(SignalingError) as excinfo:
        IceCandidate.from_dict({"sdpMid": "0"})
    assert excinfo.value.code is ErrorCode.WEBRTC_ICE_ERROR


def test_offer_requires_endpoint() -> None:
    async def _test() -> None:
        handler = SignalingHandler()
        with pytest.raises(SignalingError) as excinfo:
            await handler.process_offer(OFFER)
        assert excinfo.value.code is ErrorCode.WEBRTC_OFFER_ERROR

    run_async(_test())


def test_offer_returns_typed_answer(fake_server: FakeMediaServer) -> None:
    async def _test() -> None:
        endpoint = await _endpoint(fake_server)
        handler = SignalingHandler()
        await handler.set_endpoint(endpoint)

        answer = await handler.process_offer(RTCSessionDescription(sdp=OFFER, type="offer"))

        assert isinstance(answer, RTCSessionDescription)
        assert answer.type == "answer"
        assert answer.sdp == fake_server.answer
        assert fake_server.invocations("processOffer") == [(endpoint.id, {"offer": OFFER})]

    run_async(_test())


def test_offer_failure_is_wrapped(fake_server: FakeMediaServer) -> None:
    async def _test() -> None:
        endpoint = await _endpoint(fake_server)
        handler = SignalingHandler()
        await handler.set_endpoint(endpoint)
        fake_server.failures["processOffer"] = MediaServerError("bad sdp")
        with pytest.raises(SignalingError) as excinfo:
            await handler.process_offer(OFFER)
        assert excinfo.value.code is ErrorCode.WEBRTC_OFFER_ERROR
        assert isinstance(excinfo.value.__cause__, MediaServerError)

    run_async(_test())


def test_candidates_are_buffered_and_flushed_in_order(fake_server: FakeMediaServer) -> None:
    async def _test() -> None:
        handler = SignalingHandler()
        for index in range(3):
            await handler.add_ice_candidate(
                {"candidate": f"candidate:{index}", "sdpMid": "0", "sdpMLineIndex": 0}
            )
        assert [item.candidate for item in handler.pending_candidates] == [
            "candidate:0",
            "candidate:1",
            "candidate:2",
        ]
        fake_server.reject_candidates.add("candidate:1")

        endpoint = await _endpoint(fake_server)
        await handler.set_endpoint(endpoint)

        applied = [
            params["candidate"]["candidate"]
            for _, params in fake_server.invocations("addIceCandidate")
        ]
        assert applied == ["candidate:0", "candidate:1", "candidate:2"]
        assert handler.pending_candidates == []
        assert handler.has_endpoint

    run_async(_test())


def test_candidate_payload_is_tagged_for_kurento(fake_server: FakeMediaServer) -> None:
    async def _test() -> None:
        handler = SignalingHandler()
        await handler.set_endpoint(await _endpoint(fake_server))
        await handler.add_ice_candidate(IceCandidate("candidate:9", "1", 1))
        (_, params), = fake_server.invocations("addIceCandidate")
        assert params["candidate"] == {
            "__module__": "kurento",
            "__type__": "IceCandidate",
            "candidate": "candidate:9",
            "sdpMid": "1",
            "sdpMLineIndex": 1,
        }

    run_async(_test())


def test_direct_candidate_failure_raises(fake_server: FakeMediaServer) -> None:
    async def _test() -> None:
        handler = SignalingHandler()
        await handler.set_endpoint(await _endpoint(fake_server))
        fake_server.reject_candidates.add("candidate:bad")
        with pytest.raises(SignalingError) as excinfo:
            await handler.add_ice_candidate({"candidate": "candidate:bad"})
        assert excinfo.value.code is ErrorCode.WEBRTC_ICE_ERROR

    run_async(_test())


def test_zero_bitrate_bounds_are_skipped(fake_server: FakeMediaServer) -> None:
    async def _test() -> None:
        endpoint = await _endpoint(fake_server)
        handler = SignalingHandler()
        await handler.set_endpoint(endpoint)

        await handler.set_quality_parameters(0, 3000)
        await handler.set_quality_parameters(800, None)

        assert fake_server.invocations("setMaxVideoSendBandwidth") == [
            (endpoint.id, {"maxVideoSendBandwidth": 3000})
        ]
        assert fake_server.invocations("setMinVideoSendBandwidth") == [
            (endpoint.id, {"minVideoSendBandwidth": 800})
        ]

    run_async(_test())


def test_server_candidates_are_published(fake_server: FakeMediaServer) -> None:
    async def _test() -> None:
        endpoint = await _endpoint(fake_server)
        handler = SignalingHandler()
        received: list[IceCandidate] = []
        handler.candidates.subscribe(received.append)
        await handler.set_endpoint(endpoint)

        fake_server.fire(
            endpoint.id,
            "IceCandidateFound",
            {"candidate": {"candidate": "candidate:srv", "sdpMid": "0", "sdpMLineIndex": 0}},
        )

        assert received == [IceCandidate("candidate:srv", "0", 0)]

    run_async(_test())
