"""Per-session offer/answer state machine.

The engine owns every transition of a peer session's negotiation state:
initiating offers, answering remote offers, applying answers, trickling ICE
candidates and tearing a session down when its connection dies.

All methods run on the client's event loop. Asynchronous steps (offer and
answer creation, description application) can interleave with newly arrived
messages for the same session, so every continuation re-checks that its
session is still the registered one and in the state it expects before it
acts. Those checks are the only concurrency guard; there are no locks.

Peer-connection callbacks are not handled ad hoc: each one is translated into
a ``PeerEvent`` and routed through ``handle_peer_event``.
"""

import asyncio
import enum
import logging
import re
from typing import Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection

from . import protocol
from .config import ice_config, negotiation_config
from .errors import NegotiationError
from .identity import LocalIdentity
from .registry import PeerSession, SessionRegistry

logger = logging.getLogger(__name__)

DISCONNECTED_STATES = ("disconnected", "failed", "closed")

_MSID_RE = re.compile(r"^a=msid:(\S+)(?:\s+(\S+))?", re.MULTILINE)


class PeerEvent(enum.Enum):
    LOCAL_CANDIDATE = "icecandidate"
    TRACK = "track"
    CONNECTION_STATE = "connectionstatechange"
    ICE_CONNECTION_STATE = "iceconnectionstatechange"


def build_ice_servers() -> List[RTCIceServer]:
    servers = []
    if ice_config.STUN_SERVER_URL:
        servers.append(RTCIceServer(urls=[ice_config.STUN_SERVER_URL]))
    for url in ice_config.DEFAULT_STUN_SERVERS:
        servers.append(RTCIceServer(urls=[url]))
    if ice_config.has_turn_server:
        servers.append(RTCIceServer(
            urls=[ice_config.TURN_SERVER_URL],
            username=ice_config.TURN_USERNAME,
            credential=ice_config.TURN_CREDENTIAL,
        ))
    return servers


def create_peer_connection() -> RTCPeerConnection:
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=build_ice_servers()))


def stream_id_for(pc, track) -> str:
    """Find the remote stream a track belongs to from the msid lines of the
    remote description; a track without one is its own stream."""
    description = getattr(pc, "remoteDescription", None)
    if description is not None and description.sdp:
        for match in _MSID_RE.finditer(description.sdp):
            stream_id, track_id = match.group(1), match.group(2)
            if track_id == track.id and stream_id != "-":
                return stream_id
    return track.id


class NegotiationEngine:
    """Drives offer/answer/ICE for every peer session in the registry.

    Args:
        registry: The session store this engine mutates.
        identity: Local identity; negotiation waits for a participant id.
        send: Callable taking an outbound signaling message dict.
        pc_factory: Builds a fresh peer connection (defaults to aiortc).
        local_tracks: Callable returning the local tracks to attach to a new
            session; may return an empty list.
        on_error: Optional ``callback(participant_id, message)`` for
            negotiation failures that should reach the user.
        glare_timeout: Seconds the waiting side gives the initiator.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        identity: LocalIdentity,
        send: Callable[[dict], object],
        pc_factory: Optional[Callable[[], object]] = None,
        local_tracks: Optional[Callable[[], list]] = None,
        on_error: Optional[Callable[[str, str], None]] = None,
        glare_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.identity = identity
        self._send = send
        self._pc_factory = pc_factory or create_peer_connection
        self._local_tracks = local_tracks or (lambda: [])
        self._on_error = on_error
        self.glare_timeout = negotiation_config.GLARE_TIMEOUT if glare_timeout is None else glare_timeout
        self.last_errors: Dict[str, str] = {}
        self._tasks = set()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def now() -> float:
        return asyncio.get_running_loop().time()

    def _is_current(self, session: PeerSession, state: Optional[str] = None) -> bool:
        if self.registry.get(session.participant_id) is not session or session.closed:
            return False
        return state is None or session.state == state

    def _fail(self, session: PeerSession, action: str, error: Exception) -> None:
        pid = session.participant_id
        message = f"{action} failed: {error}"
        logger.error(f"[Negotiation] {pid[:8]}: {message}")
        self.last_errors[pid] = message
        if self._on_error:
            self._on_error(pid, message)

    def spawn(self, coro) -> asyncio.Task:
        """Run a negotiation step as its own task on the loop."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("[Negotiation] step raised", exc_info=error)

    async def drain(self) -> None:
        """Wait until no negotiation step is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # session lifecycle
    # ------------------------------------------------------------------

    def create_session(self, participant_id: str) -> Optional[PeerSession]:
        """Return the live session for ``participant_id``, creating it if needed.

        A dead (closed/failed) session is destroyed and replaced.
        """
        if participant_id == self.identity.participant_id:
            logger.warning(f"[Negotiation] refusing to create a session with ourselves")
            return None

        session = self.registry.get(participant_id)
        if session is not None:
            if not session.is_dead:
                return session
            logger.info(f"[Negotiation] replacing {session.state} session for {participant_id[:8]}")
            self.registry.destroy(participant_id)

        pc = self._pc_factory()
        tracks = list(self._local_tracks())
        for track in tracks:
            pc.addTrack(track)
        # receive-only for kinds we do not send, so the peer still sends us media
        sent_kinds = {t.kind for t in tracks}
        for kind in ("audio", "video"):
            if kind not in sent_kinds:
                pc.addTransceiver(kind, direction="recvonly")

        session = self.registry.create(participant_id, pc, created_at=self.now())
        self._wire(session)
        return session

    def _wire(self, session: PeerSession) -> None:
        pc = session.pc

        @pc.on("icecandidate")
        def on_icecandidate(candidate):
            self.handle_peer_event(session, PeerEvent.LOCAL_CANDIDATE, candidate)

        @pc.on("track")
        def on_track(track):
            self.handle_peer_event(session, PeerEvent.TRACK, track)

        @pc.on("connectionstatechange")
        def on_connectionstatechange():
            self.handle_peer_event(session, PeerEvent.CONNECTION_STATE, pc.connectionState)

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange():
            self.handle_peer_event(session, PeerEvent.ICE_CONNECTION_STATE, pc.iceConnectionState)

    def reset(self) -> None:
        """Drop every session, e.g. after the relay connection was lost."""
        logger.info(f"[Negotiation] resetting {len(self.registry)} sessions")
        self.registry.clear()
        self.last_errors.clear()

    # ------------------------------------------------------------------
    # peer connection events
    # ------------------------------------------------------------------

    def handle_peer_event(self, session: PeerSession, event: PeerEvent, payload=None) -> None:
        pid = session.participant_id
        if not self._is_current(session):
            logger.debug(f"[Negotiation] {event.value} from stale connection to {pid[:8]} ignored")
            return

        if event is PeerEvent.LOCAL_CANDIDATE:
            if payload is not None:
                self._send(protocol.make_ice_candidate(pid, payload))

        elif event is PeerEvent.TRACK:
            stream_id = stream_id_for(session.pc, payload)
            logger.info(f"[Negotiation] {payload.kind} track from {pid[:8]} (stream {stream_id})")
            self.registry.add_stream(pid, stream_id, payload)

        elif event in (PeerEvent.CONNECTION_STATE, PeerEvent.ICE_CONNECTION_STATE):
            logger.info(f"[Negotiation] {pid[:8]} {event.value}: {payload}")
            if payload in DISCONNECTED_STATES:
                self.registry.destroy(pid)
            elif payload == "connected":
                self.last_errors.pop(pid, None)

    # ------------------------------------------------------------------
    # offer side
    # ------------------------------------------------------------------

    def schedule_initiate(self, participant_id: str) -> asyncio.Task:
        return self.spawn(self.initiate(participant_id))

    async def initiate(self, participant_id: str) -> bool:
        """Create and send an offer if the session is ``stable``.

        Returns True when an offer went out.
        """
        session = self.registry.get(participant_id)
        if session is None:
            logger.warning(f"[Negotiation] no session for {participant_id[:8]}, cannot offer")
            return False
        if not self.identity.is_registered:
            logger.warning(f"[Negotiation] not registered yet, cannot offer to {participant_id[:8]}")
            return False
        if session.making_offer or session.state != "stable":
            logger.info(f"[Negotiation] cannot create offer for {participant_id[:8]}; "
                        f"signaling state is {session.state}")
            return False

        session.making_offer = True
        pc = session.pc
        try:
            offer = await pc.createOffer()
            if not self._is_current(session, "stable"):
                logger.info(f"[Negotiation] offer to {participant_id[:8]} superseded")
                return False
            await pc.setLocalDescription(offer)
        except Exception as e:
            if self._is_current(session):
                self._fail(session, "create offer", e)
            return False
        finally:
            session.making_offer = False

        if not self._is_current(session, "have-local-offer"):
            logger.info(f"[Negotiation] offer to {participant_id[:8]} dropped; session changed")
            return False

        session.offer_sent_at = self.now()
        logger.info(f"[Negotiation] sending offer to {participant_id[:8]}")
        self._send(protocol.make_offer(participant_id, pc.localDescription))
        return True

    # ------------------------------------------------------------------
    # glare fallback
    # ------------------------------------------------------------------

    def arm_glare_timer(self, participant_id: str) -> bool:
        """Arm the fallback that offers anyway if the initiator stays silent."""
        session = self.registry.get(participant_id)
        if session is None or session.glare_timer is not None:
            return False
        loop = asyncio.get_running_loop()
        session.glare_timer = loop.call_later(self.glare_timeout, self._on_glare_timeout, session)
        logger.info(f"[Negotiation] waiting for offer from {participant_id[:8]}")
        return True

    def _on_glare_timeout(self, session: PeerSession) -> None:
        session.glare_timer = None
        pid = session.participant_id
        if not self._is_current(session):
            return
        if session.remote_offer_received or session.streams:
            logger.debug(f"[Negotiation] glare timer for {pid[:8]} expired after offer/streams")
            return
        if session.making_offer or session.state != "stable":
            logger.debug(f"[Negotiation] glare timer for {pid[:8]} expired in {session.state}")
            return
        logger.info(f"[Negotiation] no offer received from {pid[:8]}, initiating connection anyway")
        self.schedule_initiate(pid)

    def _should_yield(self, session: PeerSession) -> bool:
        """Offer collision: only the larger id discards its pending offer.

        The smaller id never yields, so exactly one side answers. If its own
        offer was lost, the roster reconciler re-offers on a fresh session.
        """
        return self.identity.participant_id > session.participant_id

    # ------------------------------------------------------------------
    # answer side
    # ------------------------------------------------------------------

    async def handle_offer(self, source: str, description) -> bool:
        """Apply a remote offer and answer it. Returns True when answered."""
        if not self.identity.is_registered:
            logger.warning(f"[Negotiation] offer from {source[:8]} before registration, dropped")
            return False
        if source == self.identity.participant_id:
            logger.warning("[Negotiation] offer from ourselves, dropped")
            return False

        session = self.registry.get(source)
        if session is not None and (session.making_offer or session.state == "have-local-offer"):
            if self._should_yield(session):
                logger.info(f"[Negotiation] offer collision with {source[:8]}, discarding our offer")
                self.registry.destroy(source)
            else:
                logger.info(f"[Negotiation] offer collision with {source[:8]}, keeping our offer")
                return False

        session = self.create_session(source)
        if session is None:
            return False
        session.remote_offer_received = True
        session.cancel_timer()
        pc = session.pc

        try:
            await pc.setRemoteDescription(description)
            if not self._is_current(session):
                return False
            if session.state != "have-remote-offer":
                raise NegotiationError(source, session.state, "answer")
            await self._flush_candidates(session)
            answer = await pc.createAnswer()
            if not self._is_current(session, "have-remote-offer"):
                logger.info(f"[Negotiation] answer to {source[:8]} superseded")
                return False
            await pc.setLocalDescription(answer)
        except Exception as e:
            if self._is_current(session):
                self._fail(session, "answer offer", e)
            return False

        if not self._is_current(session):
            return False
        session.negotiated = True
        logger.info(f"[Negotiation] sending answer to {source[:8]}")
        self._send(protocol.make_answer(source, pc.localDescription))
        return True

    async def handle_answer(self, source: str, description) -> bool:
        session = self.registry.get(source)
        if session is None:
            logger.warning(f"[Negotiation] answer from {source[:8]} with no session, dropped")
            return False

        state = session.state
        if state != "have-local-offer":
            if state == "stable" and not session.negotiated and not session.making_offer:
                logger.warning(f"[Negotiation] answer from {source[:8]} in stable before any "
                               f"exchange, initiating new offer to recover")
                self.schedule_initiate(source)
            else:
                logger.warning(f"[Negotiation] cannot apply answer from {source[:8]}; "
                               f"signaling state is {state}")
            return False

        try:
            await session.pc.setRemoteDescription(description)
        except Exception as e:
            if self._is_current(session):
                self._fail(session, "apply answer", e)
            return False

        if not self._is_current(session):
            return False
        session.negotiated = True
        await self._flush_candidates(session)
        logger.info(f"[Negotiation] answer from {source[:8]} applied")
        return True

    # ------------------------------------------------------------------
    # ICE
    # ------------------------------------------------------------------

    async def handle_ice_candidate(self, source: str, candidate) -> bool:
        session = self.registry.get(source)
        if session is None:
            # peer not known yet
            return False
        if candidate is None:
            return False
        if session.pc.remoteDescription is None:
            session.pending_candidates.append(candidate)
            return True
        return await self._add_candidate(session, candidate)

    async def _add_candidate(self, session: PeerSession, candidate) -> bool:
        try:
            await session.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(f"[Negotiation] bad ICE candidate from {session.participant_id[:8]}: {e}")
            return False
        return True

    async def _flush_candidates(self, session: PeerSession) -> None:
        pending, session.pending_candidates = session.pending_candidates, []
        for candidate in pending:
            if not self._is_current(session):
                return
            await self._add_candidate(session, candidate)
