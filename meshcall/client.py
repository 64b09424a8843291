"""
Call client: glue between the relay connection and the negotiation core.

This module defines `CallClient`, which owns the asyncio event loop the core
runs on, connects to the signaling relay, dispatches every inbound message to
the roster reconciler or the negotiation engine, and reports status and
session changes to an optional UI socket. The loop runs in its own thread so
synchronous callers (a Flask app, a REPL) can drive it.
"""
import asyncio, json, logging, threading
from typing import Optional

from . import protocol
from .config import signaling_config
from .errors import IdentityError, ProtocolError
from .identity import LocalIdentity
from .media import MediaCapture
from .negotiation import NegotiationEngine
from .registry import SessionRegistry
from .roster import RosterReconciler
from .transport import SignalingTransport

logger = logging.getLogger(__name__)


class CallClient:
    """
    One participant in a mesh call.

    Inbound `participants` snapshots go to the `RosterReconciler`;
    `offer`/`answer`/`ice-candidate` go to the `NegotiationEngine`. Negotiation
    steps run as tasks so a slow answer for one peer never holds up messages
    for another.
    """
    def __init__(self, sock=None, username=None, room=None, signal_url=None,
                 identity=None, media=None, transport=None, pc_factory=None, autostart=True):
        """
        Initializes the CallClient.

        Args:
            sock: Connection with a `send(str)` method that receives status
                  updates as JSON. Can be None and set later via `set_sock`.
            username: Display name to persist before registering.
            room: Room to join; defaults to the configured room.
            signal_url: Relay URL; defaults to the configured one.
            identity, media, transport, pc_factory: Collaborators, replaceable for tests.
            autostart: Start the event loop thread and connect immediately.
        """
        self.sock = sock
        self.room = room or signaling_config.ROOM
        self.identity = identity or LocalIdentity()
        if username:
            self.identity.set_display_name(username)
        self.media = media or MediaCapture()

        self.registry = SessionRegistry()
        self.registry.subscribe(self._on_registry_change)
        self.transport = transport or SignalingTransport(signal_url)
        self.transport.on_message = self.handle_message
        self.transport.on_open = self._on_open
        self.transport.on_reset = self._on_reset

        self.engine = NegotiationEngine(
            self.registry,
            self.identity,
            self.transport.send,
            pc_factory=pc_factory,
            local_tracks=self.media.tracks_for_session,
            on_error=self._on_negotiation_error,
        )
        self.reconciler = RosterReconciler(self.registry, self.engine, self.identity)
        self.closed = False

        self.loop = None
        if autostart:
            self.start()

    def start(self):
        self.loop = asyncio.new_event_loop() # Dedicated asyncio event loop
        threading.Thread(target=self.loop.run_forever, daemon=True).start()
        asyncio.run_coroutine_threadsafe(self._run(), self.loop)

    def disconnect(self):
        async def _disc():
            if self.closed: return
            self.closed = True
            await self.transport.close()
            self.engine.reset()
            await self.registry.wait_closed()
            self.media.release()
            self._post("status", "Disconnected")
        if self.loop:
            asyncio.run_coroutine_threadsafe(_disc(), self.loop)

    def snapshot(self, timeout=2.0) -> dict:
        """
        Current view of the call, safe to call from any thread.

        Returns:
            dict with the local identity, the last roster, each session's
            state and stream ids, and any media error.
        """
        return self._on_loop(self._snapshot, timeout=timeout)

    def _on_loop(self, fn, *args, timeout=2.0):
        """
        Runs `fn(*args)` on the client's event loop and returns its result.
        Exceptions raised by `fn` propagate to the caller. Calls made on the
        loop thread itself, or before the loop runs, go straight through.
        """
        if self.loop is None or not self.loop.is_running():
            return fn(*args)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            return fn(*args)
        async def _call():
            return fn(*args)
        return asyncio.run_coroutine_threadsafe(_call(), self.loop).result(timeout)

    def _snapshot(self) -> dict:
        return {
            "id": self.identity.participant_id,
            "name": self.identity.display_name,
            "room": self.room,
            "connected": self.transport.is_open,
            "roster": [{"id": e.participant_id, "name": e.display_name} for e in self.reconciler.roster],
            "sessions": self.registry.snapshot(),
            "errors": dict(self.engine.last_errors),
            "media_error": self.media.permission_error,
        }

    def set_sock(self, sock):
        """
        Sets the socket that receives status updates; None detaches it.
        The initial state is sent from the loop thread.
        """
        self._on_loop(self._set_sock, sock)

    def _set_sock(self, sock):
        self.sock = sock
        if sock:
            self._post("state", self._snapshot())

    def set_username(self, username: str):
        """
        Changes the display name. Only allowed before registration.

        Raises:
            IdentityError: if the relay already registered us.
        """
        self._on_loop(self._set_username, username)

    def _set_username(self, username):
        self.identity.set_display_name(username)
        self._post("status", f"Username set to: {self.identity.display_name}")

    def post(self, kind, data=""):
        """Thread-safe `_post`: queues the update on the loop when it runs."""
        if self.loop is not None and self.loop.is_running():
            self.loop.call_soon_threadsafe(self._post, kind, data)
        else:
            self._post(kind, data)

    def _post(self, kind, data=""):
        if self.sock:
            try:
                self.sock.send(json.dumps({"kind": kind, "data": data}))
            except Exception as e:
                logger.warning(f"[Client] UI socket send failed: {e}")
        else:
            logger.debug(f"[Client] (no UI sock) {kind}: {data}")

    async def _run(self):
        await self.media.acquire()
        if self.media.permission_error:
            self._post("media-error", self.media.permission_error)
        self._post("status", f"Connecting to signalling server – room '{self.room}'…")
        await self.transport.run()
        self._post("status", "Signalling connection closed")

    # ------------------------------------------------------------------
    # transport callbacks
    # ------------------------------------------------------------------

    def _on_open(self):
        self.transport.send(protocol.make_register(self.identity.display_name, self.room))
        self._post("status", "Connected – registering…")

    def _on_reset(self):
        # sessions were negotiated under the old registration
        self.engine.reset()
        self.reconciler.reset()
        self.identity.reset()
        self._post("status", "Signalling connection lost – clearing peers")

    async def handle_message(self, raw):
        """
        Decodes and dispatches one inbound signaling message.

        Malformed or unknown messages are logged and dropped; nothing raised
        while handling a message escapes this method.
        """
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            msg = protocol.parse_message(data)
        except (ValueError, ProtocolError) as e:
            logger.warning(f"[Client] dropping signaling message: {e}")
            return

        try:
            if isinstance(msg, protocol.Registered):
                self._handle_registered(msg)
            elif isinstance(msg, protocol.Participants):
                self.reconciler.reconcile(msg.snapshot)
                self._post("roster", [e.display_name for e in msg.snapshot])
            elif isinstance(msg, protocol.Offer):
                self.engine.spawn(self.engine.handle_offer(msg.source, msg.description))
            elif isinstance(msg, protocol.Answer):
                self.engine.spawn(self.engine.handle_answer(msg.source, msg.description))
            elif isinstance(msg, protocol.IceCandidate):
                self.engine.spawn(self.engine.handle_ice_candidate(msg.source, msg.candidate))
        except Exception:
            logger.exception(f"[Client] error handling {type(msg).__name__}")

    def _handle_registered(self, msg):
        try:
            self.identity.assign_id(msg.participant_id)
        except IdentityError as e:
            logger.error(f"[Client] {e}")
            return
        self._post("status", f"Registered as {self.identity.display_name}")
        self.reconciler.apply_pending()

    # ------------------------------------------------------------------
    # core notifications
    # ------------------------------------------------------------------

    def _on_registry_change(self, kind, participant_id, stream_ids):
        self._post(kind, {"id": participant_id, "streams": stream_ids})

    def _on_negotiation_error(self, participant_id, message):
        self._post("error", {"id": participant_id, "message": message})
