import asyncio

import pytest
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError

from meshcall import LocalIdentity, NegotiationEngine, RosterEntry, RosterSnapshot, RosterReconciler, SessionRegistry

GLARE = 0.05


class FakeTrack:
    def __init__(self, track_id, kind="video"):
        self.id = track_id
        self.kind = kind


class FakePeerConnection:
    """In-memory stand-in for RTCPeerConnection's signaling state machine."""

    def __init__(self):
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.tracks = []
        self.transceivers = []
        self.candidates = []
        self.closed = False
        # when set, createOffer blocks until the event is set
        self.offer_gate = None
        # when True, setRemoteDescription(offer) leaves the state untouched
        self.stuck_remote = False
        self._handlers = {}

    def on(self, event):
        def decorator(fn):
            self._handlers.setdefault(event, []).append(fn)
            return fn
        return decorator

    def emit(self, event, *args):
        for fn in self._handlers.get(event, []):
            fn(*args)

    def set_connection_state(self, state):
        self.connectionState = state
        self.emit("connectionstatechange")

    def addTrack(self, track):
        self.tracks.append(track)

    def addTransceiver(self, kind, direction="sendrecv"):
        self.transceivers.append((kind, direction))

    async def createOffer(self):
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp="v=0\r\no=- offer\r\n", type="offer")

    async def createAnswer(self):
        await asyncio.sleep(0)
        if self.signalingState != "have-remote-offer":
            raise InvalidStateError(f"cannot answer in {self.signalingState}")
        return RTCSessionDescription(sdp="v=0\r\no=- answer\r\n", type="answer")

    async def setLocalDescription(self, description):
        await asyncio.sleep(0)
        if description.type == "offer":
            if self.signalingState not in ("stable", "have-local-offer"):
                raise InvalidStateError(f"cannot set local offer in {self.signalingState}")
            self.signalingState = "have-local-offer"
        else:
            if self.signalingState != "have-remote-offer":
                raise InvalidStateError(f"cannot set local answer in {self.signalingState}")
            self.signalingState = "stable"
        self.localDescription = description

    async def setRemoteDescription(self, description):
        await asyncio.sleep(0)
        if description.type == "offer":
            if self.signalingState not in ("stable", "have-remote-offer"):
                raise InvalidStateError(f"cannot set remote offer in {self.signalingState}")
            if not self.stuck_remote:
                self.signalingState = "have-remote-offer"
        else:
            if self.signalingState != "have-local-offer":
                raise InvalidStateError(f"cannot set remote answer in {self.signalingState}")
            self.signalingState = "stable"
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.signalingState = "closed"
        self.connectionState = "closed"


class PcFactory:
    def __init__(self):
        self.created = []

    def __call__(self):
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc


def roster(*ids):
    return RosterSnapshot(tuple(RosterEntry(pid, f"name-{pid}") for pid in ids))


def offer(sdp="v=0\r\no=- remote-offer\r\n"):
    return RTCSessionDescription(sdp=sdp, type="offer")


def answer(sdp="v=0\r\no=- remote-answer\r\n"):
    return RTCSessionDescription(sdp=sdp, type="answer")


def of_type(messages, kind):
    return [m for m in messages if m["type"] == kind]


@pytest.fixture
def sent():
    return []


@pytest.fixture
def identity(tmp_path):
    return LocalIdentity(prefs_path=tmp_path / "prefs.json")


@pytest.fixture
def factory():
    return PcFactory()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def engine(registry, identity, sent, factory):
    return NegotiationEngine(registry, identity, sent.append, pc_factory=factory, glare_timeout=GLARE)


@pytest.fixture
def reconciler(registry, engine, identity):
    return RosterReconciler(registry, engine, identity, settle_time=GLARE)


class FakeTransport:
    """Records outbound signaling instead of talking to a relay."""

    def __init__(self):
        self.sent = []
        self.on_message = None
        self.on_open = None
        self.on_reset = None
        self.is_open = True
        self.closed = False

    def send(self, message):
        self.sent.append(message)
        return True

    async def run(self):
        pass

    async def close(self):
        self.closed = True
