"""
Wire models for both channels peerdrop speaks on.

* Signaling envelopes travel over the rendezvous websocket as JSON text.
* Control messages travel over the data channel as JSON text frames; file
  chunks travel on the same channel as raw binary frames and have no model.

Both families are closed tagged unions keyed on ``type``. Field names on the
wire are camelCase (browser-compatible), attributes are snake_case.
"""
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import SignalingError

# Human readable errors the relay sends back to the originating endpoint.
ROOM_FULL = "Room is full or unavailable"
NOT_IN_ROOM = "Not in a room"
NO_PEER = "No peer connected"
INVALID_FORMAT = "Invalid message format"
ALREADY_IN_ROOM = "Already in a room"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    PEER_LEFT = "peer-left"
    ERROR = "error"


class TransferStatus(str, Enum):
    PENDING = "pending"
    TRANSFERRING = "transferring"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.CANCELLED, TransferStatus.ERROR)


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ───────────────────────────── signaling ─────────────────────────────

class SessionDescriptor(WireModel):
    """Opaque offer/answer blob. Never inspected, only forwarded or applied."""

    kind: Literal["offer", "answer", "pranswer", "rollback"] = Field(
        validation_alias=AliasChoices("type", "kind"), serialization_alias="type"
    )
    sdp: str = ""


class CandidateDescriptor(WireModel):
    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")
    username_fragment: Optional[str] = Field(default=None, alias="usernameFragment")


class Join(WireModel):
    type: Literal["join"] = "join"
    room_id: str = Field(alias="roomId", min_length=1)


class Offer(WireModel):
    type: Literal["offer"] = "offer"
    sdp: SessionDescriptor


class Answer(WireModel):
    type: Literal["answer"] = "answer"
    sdp: SessionDescriptor


class IceCandidate(WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: CandidateDescriptor


class PeerJoined(WireModel):
    type: Literal["peer-joined"] = "peer-joined"


class PeerLeft(WireModel):
    type: Literal["peer-left"] = "peer-left"


class Error(WireModel):
    type: Literal["error"] = "error"
    message: str


SignalingEnvelope = Annotated[
    Union[Join, Offer, Answer, IceCandidate, PeerJoined, PeerLeft, Error],
    Field(discriminator="type"),
]

# envelopes the relay forwards untouched between the two endpoints
RELAYED = (Offer, Answer, IceCandidate)

_envelope_adapter = TypeAdapter(SignalingEnvelope)


def parse_envelope(raw: Union[str, bytes]) -> SignalingEnvelope:
    """Parse one signaling frame, raising SignalingError(INVALID_FORMAT) on anything malformed."""
    try:
        return _envelope_adapter.validate_json(raw)
    except ValidationError as e:
        raise SignalingError(INVALID_FORMAT) from e


# ──────────────────────────── data channel ───────────────────────────

class FileMetadata(WireModel):
    id: str
    name: str
    size: int = Field(ge=0)
    mime_type: str = Field(
        default="application/octet-stream",
        validation_alias=AliasChoices("mimeType", "type"),
        serialization_alias="mimeType",
    )
    total_chunks: int = Field(alias="totalChunks", ge=0)

    @classmethod
    def build(cls, id: str, name: str, size: int, mime_type: str, chunk_size: int) -> "FileMetadata":
        # ceil(size / chunk_size) without floats
        return cls(id=id, name=name, size=size, mime_type=mime_type, total_chunks=-(-size // chunk_size))


class FileMetadataMessage(WireModel):
    type: Literal["file-metadata"] = "file-metadata"
    metadata: FileMetadata


class ChunkAck(WireModel):
    """Reserved for per-chunk acknowledgement. Parsed, never required."""

    type: Literal["chunk-ack"] = "chunk-ack"
    file_id: str = Field(alias="fileId")
    chunk_index: int = Field(alias="chunkIndex", ge=0)


class TransferComplete(WireModel):
    type: Literal["transfer-complete"] = "transfer-complete"
    file_id: str = Field(alias="fileId")


class TransferCancel(WireModel):
    type: Literal["transfer-cancel"] = "transfer-cancel"
    file_id: str = Field(alias="fileId")


class TransferPause(WireModel):
    type: Literal["transfer-pause"] = "transfer-pause"
    file_id: str = Field(alias="fileId")


class TransferResume(WireModel):
    type: Literal["transfer-resume"] = "transfer-resume"
    file_id: str = Field(alias="fileId")


ControlMessage = Annotated[
    Union[FileMetadataMessage, ChunkAck, TransferComplete, TransferCancel, TransferPause, TransferResume],
    Field(discriminator="type"),
]

_control_adapter = TypeAdapter(ControlMessage)


def parse_control(raw: Union[str, bytes]) -> ControlMessage:
    """Parse one data channel text frame. Raises pydantic.ValidationError when malformed."""
    return _control_adapter.validate_json(raw)
