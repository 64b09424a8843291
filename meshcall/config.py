"""meshcall settings.

Signaling endpoint, ICE servers, negotiation timers, identity preferences and
media capture devices. Values come from environment variables, optionally
loaded from ``config/.env``.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"[Config] {name}={raw!r} is not a number, using {default}")
        return default


# ============================================================
# Signaling
# ============================================================

@dataclass(frozen=True)
class SignalingConfig:
    """Relay connection settings."""

    SIGNAL_URL: str = os.getenv("SIGNAL_URL", "ws://localhost:8080")

    ROOM: str = os.getenv("ROOM", "main_room")

    # Delay before reconnecting after the relay connection closes (seconds)
    RECONNECT_DELAY: float = _float_env("RECONNECT_DELAY", 3.0)


# ============================================================
# ICE servers
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """STUN/TURN servers handed to every peer connection."""

    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
    )

    @property
    def has_turn_server(self) -> bool:
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])


# ============================================================
# Negotiation
# ============================================================

@dataclass(frozen=True)
class NegotiationConfig:
    """Glare and recovery timers."""

    # How long the waiting side gives the initiator before offering itself (seconds)
    GLARE_TIMEOUT: float = _float_env("GLARE_TIMEOUT", 2.0)

    # Age after which a session with no remote streams is considered stale (seconds)
    SETTLE_TIME: float = _float_env("SETTLE_TIME", _float_env("GLARE_TIMEOUT", 2.0))


# ============================================================
# Identity
# ============================================================

@dataclass(frozen=True)
class IdentityConfig:
    """Where the display name preference lives."""

    PREFS_PATH: Path = Path(os.getenv("PREFS_PATH", "~/.meshcall/prefs.json")).expanduser()

    DEFAULT_NAME: str = os.getenv("DEFAULT_NAME", "Anonymous")


# ============================================================
# Media capture
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """Local capture source, passed straight to aiortc's MediaPlayer.

    With no MEDIA_SOURCE configured nothing is captured and sessions negotiate
    receive-only.
    """

    MEDIA_SOURCE: Optional[str] = os.getenv("MEDIA_SOURCE")  # e.g. /dev/video0
    MEDIA_FORMAT: Optional[str] = os.getenv("MEDIA_FORMAT")  # e.g. v4l2
    VIDEO_SIZE: str = os.getenv("VIDEO_SIZE", "640x480")
    FRAMERATE: str = os.getenv("FRAMERATE", "30")


signaling_config = SignalingConfig()
ice_config = ICEServerConfig()
negotiation_config = NegotiationConfig()
identity_config = IdentityConfig()
media_config = MediaConfig()


logger.debug(f"[Config] .env path: {_env_path} (exists: {_env_path.exists()})")
logger.debug(f"[Config] relay: {signaling_config.SIGNAL_URL}, room: {signaling_config.ROOM}")
logger.debug(f"[Config] TURN configured: {ice_config.has_turn_server}")
