"""Signaling protocol helpers.

Every message is a JSON object with a ``type`` discriminator. Outbound
messages address a peer with ``target``; the relay rewrites that into
``source`` when it forwards them to the peer.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .errors import ProtocolError

# Message type constants
REGISTER = "register"
REGISTERED = "registered"
PARTICIPANTS = "participants"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"


@dataclass(frozen=True)
class RosterEntry:
    participant_id: str
    display_name: str


@dataclass(frozen=True)
class RosterSnapshot:
    """The relay's full membership view at one point in time."""

    entries: Tuple[RosterEntry, ...] = ()

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(e.participant_id for e in self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __len__(self):
        return len(self.entries)


@dataclass(frozen=True)
class Registered:
    participant_id: str


@dataclass(frozen=True)
class Participants:
    snapshot: RosterSnapshot


@dataclass(frozen=True)
class Offer:
    source: str
    description: RTCSessionDescription


@dataclass(frozen=True)
class Answer:
    source: str
    description: RTCSessionDescription


@dataclass(frozen=True)
class IceCandidate:
    source: str
    # None for an end-of-candidates marker
    candidate: Optional[RTCIceCandidate]


# ------------------------------------------------------------------
# outbound
# ------------------------------------------------------------------

def make_register(name: str, room: str) -> Dict[str, Any]:
    return {"type": REGISTER, "name": name, "room": room}


def make_offer(target: str, description: RTCSessionDescription) -> Dict[str, Any]:
    return {"type": OFFER, "target": target, "offer": description_to_dict(description)}


def make_answer(target: str, description: RTCSessionDescription) -> Dict[str, Any]:
    return {"type": ANSWER, "target": target, "answer": description_to_dict(description)}


def make_ice_candidate(target: str, candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {"type": ICE_CANDIDATE, "target": target, "candidate": candidate_to_dict(candidate)}


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def candidate_to_dict(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """Serialize an aiortc candidate the way browsers expect RTCIceCandidateInit."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


# ------------------------------------------------------------------
# inbound
# ------------------------------------------------------------------

def _require_str(msg: dict, key: str) -> str:
    value = msg.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"{msg.get('type')!r} message missing {key!r}")
    return value


def _parse_description(msg: dict, key: str, expected_type: str) -> RTCSessionDescription:
    payload = msg.get(key)
    if not isinstance(payload, dict):
        raise ProtocolError(f"{msg.get('type')!r} message missing {key!r}")
    sdp = payload.get("sdp")
    sdp_type = payload.get("type", expected_type)
    if not isinstance(sdp, str) or not sdp:
        raise ProtocolError(f"{key!r} has no sdp")
    if sdp_type != expected_type:
        raise ProtocolError(f"{key!r} has type {sdp_type!r}, expected {expected_type!r}")
    return RTCSessionDescription(sdp=sdp, type=sdp_type)


def parse_candidate(payload: Any) -> Optional[RTCIceCandidate]:
    """Build an aiortc candidate from a browser RTCIceCandidateInit dict.

    Returns None for the empty end-of-candidates marker.
    """
    if not isinstance(payload, dict):
        raise ProtocolError("ice-candidate payload is not an object")
    line = payload.get("candidate")
    if not isinstance(line, str):
        raise ProtocolError("ice-candidate payload has no candidate line")
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line.split(":", 1)[1]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ProtocolError(f"unparseable candidate {line!r}: {e}") from e
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    if candidate.sdpMid is None and candidate.sdpMLineIndex is None:
        raise ProtocolError("ice-candidate has neither sdpMid nor sdpMLineIndex")
    return candidate


def parse_roster(payload: Any) -> RosterSnapshot:
    if not isinstance(payload, list):
        raise ProtocolError("'participants' is not a list")
    entries = []
    seen = set()
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("id"), str) or not item["id"]:
            raise ProtocolError(f"roster entry without id: {item!r}")
        if item["id"] in seen:
            continue
        seen.add(item["id"])
        name = item.get("name")
        entries.append(RosterEntry(item["id"], name if isinstance(name, str) else ""))
    return RosterSnapshot(tuple(entries))


def parse_message(msg: Any):
    """Validate a decoded inbound message and return its typed form.

    Raises ProtocolError for anything that is not a well-formed inbound
    message.
    """
    if not isinstance(msg, dict):
        raise ProtocolError(f"message is not an object: {msg!r}")
    t = msg.get("type")
    if not isinstance(t, str):
        raise ProtocolError("message has no type")

    if t == REGISTERED:
        return Registered(_require_str(msg, "id"))
    elif t == PARTICIPANTS:
        return Participants(parse_roster(msg.get("participants")))
    elif t == OFFER:
        return Offer(_require_str(msg, "source"), _parse_description(msg, "offer", "offer"))
    elif t == ANSWER:
        return Answer(_require_str(msg, "source"), _parse_description(msg, "answer", "answer"))
    elif t == ICE_CANDIDATE:
        return IceCandidate(_require_str(msg, "source"), parse_candidate(msg.get("candidate")))
    raise ProtocolError(f"unknown message type {t!r}")
