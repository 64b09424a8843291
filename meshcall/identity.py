"""Local participant identity.

The relay assigns the participant id once per registration; the display name
is a persisted preference read at startup.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from .config import identity_config
from .errors import IdentityError

logger = logging.getLogger(__name__)


class LocalIdentity:
    """Process-wide state for who "we" are in the room.

    Attributes:
        participant_id: Relay-assigned id, None until ``registered`` arrives.
        display_name: Name sent with ``register``.
    """

    def __init__(self, prefs_path: Optional[Path] = None, default_name: Optional[str] = None):
        self.prefs_path = Path(prefs_path) if prefs_path else identity_config.PREFS_PATH
        self.default_name = default_name or identity_config.DEFAULT_NAME
        self.participant_id: Optional[str] = None
        self.display_name = self._load_name()

    @property
    def is_registered(self) -> bool:
        return self.participant_id is not None

    def assign_id(self, participant_id: str) -> None:
        """Record the id from the relay's ``registered`` acknowledgment."""
        if self.participant_id == participant_id:
            return
        if self.participant_id is not None:
            raise IdentityError(
                f"participant id already assigned ({self.participant_id}), refusing {participant_id}"
            )
        self.participant_id = participant_id
        logger.info(f"[Identity] registered as {participant_id} ({self.display_name})")

    def reset(self) -> None:
        """Forget the id; the relay hands out a new one on re-registration."""
        if self.participant_id is not None:
            logger.info(f"[Identity] dropping id {self.participant_id}")
        self.participant_id = None

    def set_display_name(self, name: str) -> None:
        name = name.strip()
        if not name:
            raise IdentityError("display name must not be empty")
        if self.is_registered:
            raise IdentityError("display name is fixed once registered")
        self.display_name = name
        self._save_name(name)

    def clear_display_name(self) -> None:
        if self.is_registered:
            raise IdentityError("display name is fixed once registered")
        self.display_name = self.default_name
        try:
            self.prefs_path.unlink()
        except FileNotFoundError:
            pass

    def _load_name(self) -> str:
        try:
            with open(self.prefs_path, encoding="utf-8") as f:
                name = json.load(f).get("name")
        except FileNotFoundError:
            return self.default_name
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"[Identity] unreadable preferences at {self.prefs_path}: {e}")
            return self.default_name
        if isinstance(name, str) and name.strip():
            return name.strip()
        return self.default_name

    def _save_name(self, name: str) -> None:
        self.prefs_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.prefs_path, "w", encoding="utf-8") as f:
            json.dump({"name": name}, f)
