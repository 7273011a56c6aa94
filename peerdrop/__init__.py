"""
peerdrop: two browsers (or two terminals) find each other through a tiny
websocket relay, then push files straight over a WebRTC data channel.

The relay only ever sees connection setup messages, never file content.
"""
from .config import Settings, get_settings
from .errors import (
    NegotiationError,
    PeerDropError,
    SignalingError,
    TransferError,
    TransportError,
)
from .messages import ConnectionState, FileMetadata, TransferStatus
from .peer_connector import DataChannelTransport, PeerConnector
from .rooms import JoinResult, Room, RoomRegistry
from .server import RendezvousService
from .transfers import BytesSource, FileSource, ReceivedFile, TransferEngine

__version__ = "0.1.0"

__all__ = [
    "BytesSource",
    "ConnectionState",
    "DataChannelTransport",
    "FileMetadata",
    "FileSource",
    "JoinResult",
    "NegotiationError",
    "PeerConnector",
    "PeerDropError",
    "ReceivedFile",
    "RendezvousService",
    "Room",
    "RoomRegistry",
    "Settings",
    "SignalingError",
    "TransferEngine",
    "TransferError",
    "TransferStatus",
    "TransportError",
    "get_settings",
]
