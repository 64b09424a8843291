"""Peer session registry.

Owns the mapping from remote participant id to its peer connection and the
remote media streams received on it. Every mutation is followed by a change
notification to the subscribed observers, so presentation code never has to
poll the store.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

# Change notification kinds
SESSION_CREATED = "session-created"
SESSION_DESTROYED = "session-destroyed"
STREAMS_CHANGED = "streams"

TERMINAL_STATES = ("closed", "failed")


@dataclass
class RemoteStream:
    """A remote media stream: the tracks the peer grouped under one stream id."""

    id: str
    tracks: list = field(default_factory=list)


class PeerSession:
    """One remote participant's peer connection and what arrived over it.

    Attributes:
        participant_id: Remote participant id.
        pc: The owned RTCPeerConnection (or anything shaped like it).
        streams: Remote streams keyed by stream id, in arrival order.
        created_at: Event loop time at creation.
        remote_offer_received: An offer from the peer has been seen.
        offer_sent_at: Loop time of the last local offer, None if never sent.
        negotiated: At least one full offer/answer exchange completed.
        glare_timer: Pending fallback-initiation timer, if armed.
        making_offer: An offer is being created; guards against a second one.
        pending_candidates: Remote ICE candidates that arrived before the
            remote description.
    """

    def __init__(self, participant_id: str, pc, created_at: float = 0.0):
        self.participant_id = participant_id
        self.pc = pc
        self.streams: "OrderedDict[str, RemoteStream]" = OrderedDict()
        self.created_at = created_at
        self.remote_offer_received = False
        self.offer_sent_at: Optional[float] = None
        self.negotiated = False
        self.glare_timer: Optional[asyncio.TimerHandle] = None
        self.making_offer = False
        self.pending_candidates: list = []
        self.closed = False

    @property
    def state(self) -> str:
        """Negotiation-state projection of the underlying connection."""
        if self.closed:
            return "closed"
        connection_state = getattr(self.pc, "connectionState", "new")
        ice_state = getattr(self.pc, "iceConnectionState", "new")
        if connection_state == "failed" or ice_state == "failed":
            return "failed"
        if connection_state == "closed" or ice_state == "closed":
            return "closed"
        return self.pc.signalingState

    @property
    def is_dead(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def stream_ids(self) -> List[str]:
        return list(self.streams)

    def cancel_timer(self) -> None:
        if self.glare_timer is not None:
            self.glare_timer.cancel()
            self.glare_timer = None

    def __repr__(self):
        return f"<PeerSession {self.participant_id} {self.state} streams={len(self.streams)}>"


class SessionRegistry:
    """Ownership map from participant id to PeerSession.

    Only the negotiation engine and the roster reconciler call ``create`` and
    ``destroy``. All calls happen on the event loop thread.
    """

    def __init__(self):
        self._sessions: Dict[str, PeerSession] = {}
        self._observers: List[Callable] = []
        self._closing: Set[asyncio.Future] = set()

    # -- observers ---------------------------------------------------

    def subscribe(self, callback: Callable) -> None:
        """Register ``callback(kind, participant_id, stream_ids)``."""
        self._observers.append(callback)

    def unsubscribe(self, callback: Callable) -> None:
        if callback in self._observers:
            self._observers.remove(callback)

    def _notify(self, kind: str, participant_id: str, stream_ids: List[str]) -> None:
        for callback in list(self._observers):
            try:
                callback(kind, participant_id, stream_ids)
            except Exception:
                logger.exception(f"[Registry] observer failed on {kind} for {participant_id[:8]}")

    # -- lookup ------------------------------------------------------

    def get(self, participant_id: str) -> Optional[PeerSession]:
        return self._sessions.get(participant_id)

    def ids(self) -> Set[str]:
        return set(self._sessions)

    def sessions(self) -> List[PeerSession]:
        return list(self._sessions.values())

    def __contains__(self, participant_id):
        return participant_id in self._sessions

    def __len__(self):
        return len(self._sessions)

    # -- mutation ----------------------------------------------------

    def create(self, participant_id: str, pc, created_at: float = 0.0) -> PeerSession:
        if participant_id in self._sessions:
            raise ValueError(f"session for {participant_id} already exists")
        session = PeerSession(participant_id, pc, created_at)
        self._sessions[participant_id] = session
        logger.info(f"[Registry] session created: {participant_id[:8]} (total {len(self._sessions)})")
        self._notify(SESSION_CREATED, participant_id, [])
        return session

    def destroy(self, participant_id: str) -> bool:
        """Release the session's connection and streams, then drop the entry.

        Returns False when there was no session. Closing the connection is
        asynchronous; the close task is tracked and can be awaited with
        ``wait_closed``.
        """
        session = self._sessions.get(participant_id)
        if session is None:
            return False

        session.closed = True
        session.cancel_timer()
        session.streams.clear()
        self._close_connection(session)
        del self._sessions[participant_id]

        logger.info(f"[Registry] session destroyed: {participant_id[:8]} (total {len(self._sessions)})")
        self._notify(SESSION_DESTROYED, participant_id, [])
        return True

    def clear(self) -> None:
        for participant_id in list(self._sessions):
            self.destroy(participant_id)

    def add_stream(self, participant_id: str, stream_id: str, track) -> bool:
        """Attach a received track; True if it opened a stream id not seen before."""
        session = self._sessions.get(participant_id)
        if session is None or session.closed:
            return False

        stream = session.streams.get(stream_id)
        if stream is not None:
            if track not in stream.tracks:
                stream.tracks.append(track)
            return False

        session.streams[stream_id] = RemoteStream(stream_id, [track])
        logger.info(f"[Registry] new stream {stream_id} from {participant_id[:8]}")
        self._notify(STREAMS_CHANGED, participant_id, session.stream_ids)
        return True

    def snapshot(self) -> Dict[str, dict]:
        return {
            pid: {"state": s.state, "streams": s.stream_ids}
            for pid, s in self._sessions.items()
        }

    # -- connection release -----------------------------------------

    def _close_connection(self, session: PeerSession) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no running loop: nothing is driving the connection any more
            logger.warning(f"[Registry] no event loop to close {session.participant_id[:8]}")
            return
        task = loop.create_task(session.pc.close())
        self._closing.add(task)
        task.add_done_callback(self._on_closed)

    def _on_closed(self, task: asyncio.Future) -> None:
        self._closing.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"[Registry] error closing peer connection: {task.exception()}")

    async def wait_closed(self) -> None:
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
