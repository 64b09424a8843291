import asyncio

from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from meshcall import PeerEvent

from conftest import FakeTrack, GLARE, answer, of_type, offer

CANDIDATE = "842163049 1 udp 1677729535 192.0.2.1 54400 typ srflx"


def remote_candidate():
    c = candidate_from_sdp(CANDIDATE)
    c.sdpMid = "0"
    c.sdpMLineIndex = 0
    return c


async def test_initiate_sends_full_offer(engine, identity, registry, sent):
    identity.assign_id("A")
    session = engine.create_session("B")

    assert await engine.initiate("B")
    assert session.state == "have-local-offer"
    assert sent == [{"type": "offer", "target": "B",
                     "offer": {"type": "offer", "sdp": session.pc.localDescription.sdp}}]
    assert session.offer_sent_at is not None


async def test_initiate_outside_stable_is_noop(engine, identity, sent):
    identity.assign_id("A")
    session = engine.create_session("B")
    session.pc.signalingState = "have-remote-offer"
    assert not await engine.initiate("B")
    assert sent == []


async def test_initiate_requires_registration(engine, sent):
    engine.create_session("B")
    assert not await engine.initiate("B")
    assert sent == []


async def test_no_session_with_ourselves(engine, identity, registry):
    identity.assign_id("A")
    assert engine.create_session("A") is None
    assert "A" not in registry


async def test_receive_only_without_local_tracks(engine, identity, factory):
    identity.assign_id("A")
    engine.create_session("B")
    assert factory.created[0].transceivers == [("audio", "recvonly"), ("video", "recvonly")]


async def test_local_tracks_are_attached(registry, identity, sent, factory):
    from meshcall import NegotiationEngine

    mic = FakeTrack("mic", "audio")
    engine = NegotiationEngine(registry, identity, sent.append, pc_factory=factory,
                               local_tracks=lambda: [mic])
    identity.assign_id("A")
    engine.create_session("B")
    pc = factory.created[0]
    assert pc.tracks == [mic]
    assert pc.transceivers == [("video", "recvonly")]


async def test_offer_creates_session_and_answers(engine, identity, registry, sent):
    identity.assign_id("B")
    assert await engine.handle_offer("A", offer())

    session = registry.get("A")
    assert session.state == "stable"
    assert session.negotiated
    assert session.remote_offer_received
    assert of_type(sent, "answer") == [{"type": "answer", "target": "A",
                                        "answer": {"type": "answer", "sdp": session.pc.localDescription.sdp}}]


async def test_offer_before_registration_is_dropped(engine, registry, sent):
    assert not await engine.handle_offer("A", offer())
    assert "A" not in registry
    assert sent == []


async def test_answer_completes_offer(engine, identity, registry):
    identity.assign_id("A")
    session = engine.create_session("B")
    await engine.initiate("B")

    assert await engine.handle_answer("B", answer())
    assert session.state == "stable"
    assert session.negotiated


async def test_late_answer_in_stable_is_ignored(engine, identity, registry, sent):
    identity.assign_id("A")
    session = engine.create_session("B")
    await engine.initiate("B")
    await engine.handle_answer("B", answer())
    sent.clear()

    assert not await engine.handle_answer("B", answer())
    await engine.drain()
    assert session.state == "stable"
    assert registry.get("B") is session
    assert sent == []


async def test_stray_answer_before_any_exchange_reinitiates(engine, identity, sent):
    identity.assign_id("A")
    session = engine.create_session("B")

    assert not await engine.handle_answer("B", answer())
    await engine.drain()
    assert session.state == "have-local-offer"
    assert len(of_type(sent, "offer")) == 1


async def test_answer_in_have_remote_offer_is_ignored(engine, identity, sent):
    identity.assign_id("A")
    session = engine.create_session("B")
    session.pc.signalingState = "have-remote-offer"
    assert not await engine.handle_answer("B", answer())
    await engine.drain()
    assert sent == []
    assert session.state == "have-remote-offer"


async def test_answer_without_session_is_dropped(engine, identity, registry):
    identity.assign_id("A")
    assert not await engine.handle_answer("Z", answer())
    assert "Z" not in registry


async def test_answer_while_offer_in_flight_does_not_double_offer(engine, identity, factory, sent):
    identity.assign_id("A")
    session = engine.create_session("B")
    gate = factory.created[0].offer_gate = asyncio.Event()

    pending = engine.schedule_initiate("B")
    await asyncio.sleep(0)
    assert session.making_offer

    assert not await engine.handle_answer("B", answer())
    gate.set()
    await pending
    await engine.drain()
    assert len(of_type(sent, "offer")) == 1


async def test_destroy_during_offer_makes_continuation_noop(engine, identity, registry, factory, sent):
    identity.assign_id("A")
    engine.create_session("B")
    gate = factory.created[0].offer_gate = asyncio.Event()

    pending = engine.schedule_initiate("B")
    await asyncio.sleep(0)
    registry.destroy("B")
    gate.set()

    assert await pending is False
    assert sent == []
    assert "B" not in registry


async def test_remote_offer_race_is_reported_not_retried(engine, identity, registry, factory, sent):
    identity.assign_id("B")
    session = engine.create_session("A")
    factory.created[0].stuck_remote = True
    errors = []
    engine._on_error = lambda pid, message: errors.append((pid, message))

    assert not await engine.handle_offer("A", offer())
    await engine.drain()
    assert of_type(sent, "answer") == []
    assert "answer offer failed" in engine.last_errors["A"]
    assert errors and errors[0][0] == "A"
    assert registry.get("A") is session


async def test_candidate_for_unknown_participant_is_dropped(engine, identity, registry):
    identity.assign_id("A")
    assert not await engine.handle_ice_candidate("ghost", remote_candidate())
    assert "ghost" not in registry
    assert len(registry) == 0


async def test_candidates_buffer_until_remote_description(engine, identity, registry):
    identity.assign_id("B")
    session = engine.create_session("A")
    candidate = remote_candidate()

    assert await engine.handle_ice_candidate("A", candidate)
    assert session.pc.candidates == []
    await engine.handle_offer("A", offer())
    assert session.pc.candidates == [candidate]

    second = remote_candidate()
    await engine.handle_ice_candidate("A", second)
    assert session.pc.candidates == [candidate, second]


async def test_local_candidate_is_signaled(engine, identity, sent):
    identity.assign_id("A")
    session = engine.create_session("B")
    session.pc.emit("icecandidate", remote_candidate())
    session.pc.emit("icecandidate", None)

    messages = of_type(sent, "ice-candidate")
    assert len(messages) == 1
    assert messages[0]["target"] == "B"
    assert messages[0]["candidate"]["sdpMid"] == "0"
    assert messages[0]["candidate"]["candidate"].startswith("candidate:842163049")


async def test_tracks_grouped_by_remote_stream(engine, identity, registry):
    identity.assign_id("B")
    sdp = (
        "v=0\r\n"
        "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\na=msid:stream-1 mic\r\n"
        "m=video 9 UDP/TLS/RTP/SAVPF 96\r\na=msid:stream-1 cam\r\n"
    )
    await engine.handle_offer("A", offer(sdp))
    session = registry.get("A")
    mic, cam = FakeTrack("mic", "audio"), FakeTrack("cam")

    session.pc.emit("track", mic)
    session.pc.emit("track", cam)
    session.pc.emit("track", cam)

    assert session.stream_ids == ["stream-1"]
    assert session.streams["stream-1"].tracks == [mic, cam]


async def test_track_without_msid_is_its_own_stream(engine, identity, registry):
    identity.assign_id("A")
    session = engine.create_session("B")
    for _ in range(3):
        session.pc.emit("track", FakeTrack("lonely"))
    assert session.stream_ids == ["lonely"]


async def test_connection_failure_destroys_session(engine, identity, registry):
    identity.assign_id("A")
    session = engine.create_session("B")
    pc = session.pc
    pc.emit("track", FakeTrack("t1"))

    pc.set_connection_state("failed")
    assert "B" not in registry
    assert session.streams == {}
    await registry.wait_closed()
    assert pc.closed

    # events from the dead connection no longer reach the registry
    pc.emit("track", FakeTrack("t2"))
    assert "B" not in registry


async def test_ice_disconnected_destroys_session(engine, identity, registry):
    identity.assign_id("A")
    session = engine.create_session("B")
    session.pc.iceConnectionState = "disconnected"
    session.pc.emit("iceconnectionstatechange")
    assert "B" not in registry


async def test_handle_peer_event_connected_clears_error(engine, identity):
    identity.assign_id("A")
    session = engine.create_session("B")
    engine.last_errors["B"] = "old failure"
    engine.handle_peer_event(session, PeerEvent.CONNECTION_STATE, "connected")
    assert "B" not in engine.last_errors


async def test_collision_larger_id_yields(engine, identity, registry, sent):
    identity.assign_id("B")
    old = engine.create_session("A")
    await engine.initiate("A")
    sent.clear()

    assert await engine.handle_offer("A", offer())
    new = registry.get("A")
    assert new is not old
    assert old.closed
    assert new.state == "stable"
    assert of_type(sent, "answer")[0]["target"] == "A"


async def test_collision_smaller_id_keeps_fresh_offer(engine, identity, registry, sent):
    identity.assign_id("A")
    session = engine.create_session("B")
    await engine.initiate("B")
    sent.clear()

    assert not await engine.handle_offer("B", offer())
    assert registry.get("B") is session
    assert session.state == "have-local-offer"
    assert sent == []


async def test_collision_smaller_id_keeps_old_offer(engine, identity, registry, sent):
    identity.assign_id("A")
    session = engine.create_session("B")
    await engine.initiate("B")
    session.offer_sent_at -= GLARE * 10
    sent.clear()

    assert not await engine.handle_offer("B", offer())
    assert registry.get("B") is session
    assert session.state == "have-local-offer"
    assert sent == []


async def test_reset_drops_everything(engine, identity, registry):
    identity.assign_id("A")
    engine.create_session("B")
    engine.create_session("C")
    engine.reset()
    assert len(registry) == 0
