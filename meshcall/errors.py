"""Exception types raised by the meshcall core."""


class MeshCallError(Exception):
    """Base class for every error raised by meshcall."""


class ProtocolError(MeshCallError):
    """A signaling message is malformed or has an unknown type."""


class IdentityError(MeshCallError):
    """Local identity was mutated after it was fixed."""


class NegotiationError(MeshCallError):
    """An offer/answer step was attempted in the wrong signaling state."""

    def __init__(self, participant_id, state, action):
        self.participant_id = participant_id
        self.state = state
        self.action = action
        super().__init__(f"cannot {action} for {participant_id}: signaling state is {state}")
