"""meshcall: client-side signaling and negotiation for peer-to-peer mesh calls.

Classes:
    CallClient: Relay connection plus the negotiation core, on its own loop
    NegotiationEngine: Per-peer offer/answer/ICE state machine
    RosterReconciler: Applies relay roster snapshots to the session registry
    SessionRegistry: Participant id -> PeerSession store with change notifications
    LocalIdentity: Local participant id and display name
    SignalingTransport: WebSocket connection to the relay
    MediaCapture: Local audio/video tracks
"""

from .errors import MeshCallError, ProtocolError, IdentityError, NegotiationError
from .identity import LocalIdentity
from .registry import SessionRegistry, PeerSession, RemoteStream
from .negotiation import NegotiationEngine, PeerEvent
from .roster import RosterReconciler
from .protocol import RosterEntry, RosterSnapshot
from .transport import SignalingTransport
from .media import MediaCapture
from .client import CallClient

__all__ = [
    "CallClient",
    "NegotiationEngine",
    "PeerEvent",
    "RosterReconciler",
    "SessionRegistry",
    "PeerSession",
    "RemoteStream",
    "LocalIdentity",
    "SignalingTransport",
    "MediaCapture",
    "RosterEntry",
    "RosterSnapshot",
    "MeshCallError",
    "ProtocolError",
    "IdentityError",
    "NegotiationError",
]
