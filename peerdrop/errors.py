"""Exception types shared by the relay, the peer connector and the transfer engine."""


class PeerDropError(Exception):
    """Base class for everything peerdrop raises on purpose."""


class SignalingError(PeerDropError):
    """
    Rendezvous-level failure: malformed envelope, full room, not in a room,
    no peer to relay to. Only ever reported back to the endpoint that caused it.
    """


class NegotiationError(PeerDropError):
    """A session descriptor or candidate could not be applied. Non-fatal."""


class TransportError(PeerDropError):
    """The data channel or peer connection failed. Fatal to the session."""


class TransferError(PeerDropError):
    """A single transfer failed (chunk read/send, size mismatch)."""

    def __init__(self, transfer_id: str, message: str):
        super().__init__(message)
        self.transfer_id = transfer_id
        self.message = message
