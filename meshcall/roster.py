"""Roster reconciliation.

The relay periodically sends the full membership of the room. Each snapshot is
diffed against the session registry: newcomers (and peers whose session died
or never produced media) get a session and start negotiating, and sessions
for peers that left are torn down.

Only one side of a pair initiates: the participant with the lexicographically
smaller id sends the offer, the other arms a fallback timer and waits. An
offer from the smaller id that stays unanswered past the settle time is
sent again on a fresh connection.
"""

import asyncio
import logging
from typing import Optional

from .config import negotiation_config
from .identity import LocalIdentity
from .negotiation import NegotiationEngine
from .protocol import RosterSnapshot
from .registry import PeerSession, SessionRegistry

logger = logging.getLogger(__name__)


class RosterReconciler:
    """Keeps the session registry in step with the relay's roster.

    ``reconcile`` never suspends: it creates and destroys sessions
    synchronously and schedules any offer as a separate task, so a snapshot is
    fully applied before another event is processed.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        engine: NegotiationEngine,
        identity: LocalIdentity,
        settle_time: Optional[float] = None,
    ):
        self.registry = registry
        self.engine = engine
        self.identity = identity
        self.settle_time = negotiation_config.SETTLE_TIME if settle_time is None else settle_time
        self.roster = RosterSnapshot()
        self._pending: Optional[RosterSnapshot] = None

    def reconcile(self, snapshot: RosterSnapshot) -> bool:
        """Apply a roster snapshot. Returns False if it was held back because
        the local participant is not registered yet."""
        self.roster = snapshot
        local_id = self.identity.participant_id
        if local_id is None:
            logger.info(f"[Roster] {len(snapshot)} participants before registration; holding snapshot")
            self._pending = snapshot
            return False
        self._pending = None

        present = set()
        for entry in snapshot:
            pid = entry.participant_id
            if pid == local_id:
                continue
            present.add(pid)

            session = self.registry.get(pid)
            if session is None or session.is_dead:
                logger.info(f"[Roster] setting up connection with {pid[:8]} ({entry.display_name})")
                self.engine.create_session(pid)
                self._negotiate(pid, local_id)
            elif not session.streams and self._is_stale(session):
                logger.info(f"[Roster] {pid[:8]} has a connection but no stream, renegotiating")
                self._negotiate(pid, local_id)
            elif local_id < pid and self._offer_unanswered(session):
                logger.info(f"[Roster] no answer from {pid[:8]}, offering on a fresh connection")
                self.registry.destroy(pid)
                self.engine.create_session(pid)
                self._negotiate(pid, local_id)

        for pid in self.registry.ids() - present:
            logger.info(f"[Roster] participant left: {pid[:8]}")
            self.registry.destroy(pid)
        return True

    def apply_pending(self) -> bool:
        """Apply a snapshot held back until registration completed."""
        if self._pending is None:
            return False
        return self.reconcile(self._pending)

    def reset(self) -> None:
        self.roster = RosterSnapshot()
        self._pending = None

    def _negotiate(self, pid: str, local_id: str) -> None:
        if local_id < pid:
            logger.info(f"[Roster] initiating connection to {pid[:8]}")
            self.engine.schedule_initiate(pid)
        else:
            self.engine.arm_glare_timer(pid)

    def _is_stale(self, session: PeerSession) -> bool:
        """Settled long enough to expect media, yet nothing arrived and the
        connection is not up."""
        if session.making_offer or session.state != "stable":
            return False
        if getattr(session.pc, "connectionState", None) == "connected":
            return False
        age = asyncio.get_running_loop().time() - session.created_at
        return age >= self.settle_time

    def _offer_unanswered(self, session: PeerSession) -> bool:
        if session.making_offer or session.state != "have-local-offer" or session.offer_sent_at is None:
            return False
        return asyncio.get_running_loop().time() - session.offer_sent_at >= self.settle_time
