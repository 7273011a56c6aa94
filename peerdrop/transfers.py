"""
Chunked file transfer over an established data channel.

Sending side: files are queued with ``send_files`` and pushed strictly one at
a time. Each file is announced with ``file-metadata``, streamed as raw binary
frames of ``chunk_size`` bytes (the last one may be shorter) and closed with
``transfer-complete``. Chunks carry no transfer id, so the next file is never
announced before the previous one is finished.

Receiving side: ``file-metadata`` opens a receiving transfer, every binary
frame is appended to it in arrival order, and ``transfer-complete`` joins the
chunks into a ``ReceivedFile``.

The engine is driven by ``handle_message`` (hook it to the peer connector's
``on_message``) and ``set_connection_state`` (hook it to ``on_state_change``).
"""
import asyncio, logging, mimetypes, os, time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from pydantic import ValidationError

from .config import Settings, get_settings
from .errors import TransferError
from .messages import (
    ChunkAck, ConnectionState, FileMetadata, FileMetadataMessage, TransferCancel,
    TransferComplete, TransferPause, TransferResume, TransferStatus, parse_control,
)

logger = logging.getLogger(__name__)

CONNECTION_LOST = "Connection lost"


# ───────────────────────────── records ──────────────────────────────

@dataclass
class Transfer:
    id: str
    metadata: FileMetadata
    status: TransferStatus = TransferStatus.PENDING
    bytes_transferred: int = 0
    total_bytes: int = 0
    speed: float = 0.0      # bytes / second
    eta: float = 0.0        # seconds remaining
    start_time: float = 0.0
    last_update_time: float = 0.0
    error: Optional[str] = None

    direction = "unknown"

    def record_progress(self, now: float):
        elapsed = now - self.start_time
        self.speed = self.bytes_transferred / elapsed if elapsed > 0 else 0.0
        remaining = self.total_bytes - self.bytes_transferred
        self.eta = remaining / self.speed if self.speed > 0 else 0.0
        self.last_update_time = now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "direction": self.direction,
            "metadata": self.metadata.model_dump(by_alias=True),
            "status": self.status.value,
            "bytesTransferred": self.bytes_transferred,
            "totalBytes": self.total_bytes,
            "speed": self.speed,
            "eta": self.eta,
            "startTime": self.start_time,
            "lastUpdateTime": self.last_update_time,
            "error": self.error,
        }


@dataclass
class SendingTransfer(Transfer):
    current_chunk_index: int = 0

    direction = "sending"

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["currentChunkIndex"] = self.current_chunk_index
        return d


@dataclass
class ReceivingTransfer(Transfer):
    expected_chunks: int = 0
    chunks_received: int = 0

    direction = "receiving"

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["expectedChunks"] = self.expected_chunks
        d["chunksReceived"] = self.chunks_received
        return d


@dataclass
class ReceivedFile:
    metadata: FileMetadata
    data: bytes

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def mime_type(self) -> str:
        return self.metadata.mime_type

    def save(self, directory: str) -> str:
        os.makedirs(directory, exist_ok=True)
        # never let a peer-chosen name escape the target directory
        path = os.path.join(directory, os.path.basename(self.name) or self.metadata.id)
        with open(path, "wb") as f:
            f.write(self.data)
        return path


# ───────────────────────────── sources ──────────────────────────────

class BytesSource:
    """An in-memory payload to send."""

    def __init__(self, name: str, data: bytes, mime_type: str = "application/octet-stream"):
        self.name, self.data, self.mime_type = name, bytes(data), mime_type

    @property
    def size(self) -> int:
        return len(self.data)

    def read(self, start: int, end: int) -> bytes:
        return self.data[start:end]


class FileSource:
    """A file on disk, read lazily one chunk at a time."""

    def __init__(self, path: str, mime_type: Optional[str] = None):
        if not os.path.isfile(path):
            raise FileNotFoundError(path)
        self.path = path
        self.name = os.path.basename(path)
        self.size = os.path.getsize(path)
        self.mime_type = mime_type or mimetypes.guess_type(self.name)[0] or "application/octet-stream"

    def read(self, start: int, end: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(start)
            return f.read(end - start)


class ChunkArena:
    """Append-only chunk buffers keyed by transfer id, freed in one go."""

    def __init__(self):
        self._chunks: Dict[str, List[bytes]] = {}

    def __contains__(self, transfer_id):
        return transfer_id in self._chunks

    def __len__(self):
        return len(self._chunks)

    def open(self, transfer_id: str):
        self._chunks[transfer_id] = []

    def append(self, transfer_id: str, chunk: bytes):
        self._chunks[transfer_id].append(chunk)

    def chunks(self, transfer_id: str) -> List[bytes]:
        return list(self._chunks.get(transfer_id, ()))

    def assemble(self, transfer_id: str) -> bytes:
        return b"".join(self._chunks.pop(transfer_id, ()))

    def release(self, transfer_id: str):
        self._chunks.pop(transfer_id, None)

    def clear(self):
        self._chunks.clear()


def _noop(*_args):
    pass


# ───────────────────────────── engine ───────────────────────────────

class TransferEngine:
    """
    Owns every transfer record of one session.

    Args:
        channel: anything with ``send_text(str)``, ``send_bytes(bytes)`` and a
            ``buffered_amount`` attribute (normally a DataChannelTransport).
            May be attached later via ``attach``.
        settings: chunk size, backpressure threshold and retry delay.
        on_update: called with the Transfer after every state/progress change.
        on_complete: called with (Transfer, ReceivedFile | None) once a
            transfer completes; the file is None on the sending side.
        on_error: called with (transfer_id, message) when a transfer fails.
    """

    def __init__(self, channel=None, settings: Optional[Settings] = None,
                 on_update: Callable = _noop, on_complete: Callable = _noop,
                 on_error: Callable = _noop, clock: Callable[[], float] = time.time):
        settings = settings or get_settings()
        self.channel = channel
        self.chunk_size = settings.chunk_size
        self.max_buffered_amount = settings.max_buffered_amount
        self.backpressure_delay = settings.backpressure_delay
        self.on_update, self.on_complete, self.on_error = on_update, on_complete, on_error
        self.clock = clock

        self.sending: Dict[str, SendingTransfer] = {}
        self.receiving: Dict[str, ReceivingTransfer] = {}
        self.arena = ChunkArena()

        self._sources: Dict[str, object] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._connected = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None

    def attach(self, channel):
        self.channel = channel

    # --- connection gating ---

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def set_connection_state(self, state: ConnectionState):
        if state is ConnectionState.CONNECTED:
            self._connected.set()
            return
        self._connected.clear()
        if state is ConnectionState.CONNECTING:
            return
        # the session is over; nothing in flight can finish now
        for t in list(self.sending.values()) + list(self.receiving.values()):
            if not t.status.is_terminal:
                self._fail(t, CONNECTION_LOST)
        self._stop_sender()

    def _stop_sender(self):
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    # --- sending ---

    def send_files(self, sources: Iterable) -> List[str]:
        """Queue files for sending, in order. Returns their transfer ids."""
        ids = []
        for source in sources:
            transfer_id = str(uuid4())
            metadata = FileMetadata.build(transfer_id, source.name, source.size, source.mime_type, self.chunk_size)
            now = self.clock()
            transfer = SendingTransfer(
                id=transfer_id, metadata=metadata, total_bytes=source.size,
                start_time=now, last_update_time=now,
            )
            self.sending[transfer_id] = transfer
            self._sources[transfer_id] = source
            wakeup = self._wakeups[transfer_id] = asyncio.Event()
            wakeup.set()
            self.on_update(transfer)
            self._queue.put_nowait(transfer_id)
            ids.append(transfer_id)

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_sender())
        return ids

    async def wait_idle(self):
        """Wait until every queued file has completed, failed or been cancelled."""
        await self._queue.join()

    async def _run_sender(self):
        while True:
            transfer_id = await self._queue.get()
            try:
                transfer = self.sending.get(transfer_id)
                if transfer is None or transfer.status is not TransferStatus.PENDING:
                    continue
                await self._connected.wait()
                if transfer.status is TransferStatus.PENDING:
                    await self._send_one(transfer)
            except Exception as e:
                # a broken control send only sinks this file, the queue keeps going
                logger.exception("Error sending %s", transfer_id)
                if not transfer.status.is_terminal:
                    self._fail(transfer, str(e))
            finally:
                self._queue.task_done()

    async def _send_one(self, transfer: SendingTransfer):
        if self.channel is None:
            self._fail(transfer, "No data channel attached")
            return
        self._send_control(FileMetadataMessage(metadata=transfer.metadata))
        logger.info("Sending %s (%d bytes, %d chunks)", transfer.metadata.name,
                    transfer.total_bytes, transfer.metadata.total_chunks)

        now = self.clock()
        transfer.status = TransferStatus.TRANSFERRING
        transfer.start_time = transfer.last_update_time = now
        self.on_update(transfer)

        try:
            await self._pump(transfer)
        except TransferError as e:
            logger.error("Error sending chunk for %s: %s", transfer.id, e.message)
            self._fail(transfer, e.message)
            return

        if transfer.status is not TransferStatus.TRANSFERRING:
            return  # cancelled or failed mid-loop
        transfer.status = TransferStatus.COMPLETED
        transfer.record_progress(self.clock())
        self._sources.pop(transfer.id, None)
        self._wakeups.pop(transfer.id, None)
        self.on_update(transfer)
        # the peer must see the end of this file before the next file-metadata
        self._send_control(TransferComplete(file_id=transfer.id))
        logger.info("Sent %s", transfer.metadata.name)
        self.on_complete(transfer, None)

    async def _pump(self, transfer: SendingTransfer):
        source = self._sources[transfer.id]
        wakeup = self._wakeups[transfer.id]
        size = transfer.total_bytes

        while True:
            if transfer.status is TransferStatus.PAUSED:
                await wakeup.wait()
                continue
            if transfer.status is not TransferStatus.TRANSFERRING or transfer.bytes_transferred >= size:
                return
            if self.channel.buffered_amount > self.max_buffered_amount:
                await asyncio.sleep(self.backpressure_delay)
                continue

            start = transfer.current_chunk_index * self.chunk_size
            end = min(start + self.chunk_size, size)
            try:
                self.channel.send_bytes(source.read(start, end))
            except Exception as e:
                raise TransferError(transfer.id, f"Failed to send chunk {transfer.current_chunk_index}: {e}") from e

            transfer.current_chunk_index += 1
            transfer.bytes_transferred = end
            transfer.record_progress(self.clock())
            self.on_update(transfer)
            await asyncio.sleep(0)

    # --- pause / resume / cancel ---

    def pause(self, file_id: str) -> bool:
        return self._set_paused(file_id, True, notify=True)

    def resume(self, file_id: str) -> bool:
        return self._set_paused(file_id, False, notify=True)

    def _set_paused(self, file_id: str, paused: bool, notify: bool) -> bool:
        transfer = self.sending.get(file_id) or self.receiving.get(file_id)
        current, target = (
            (TransferStatus.TRANSFERRING, TransferStatus.PAUSED) if paused
            else (TransferStatus.PAUSED, TransferStatus.TRANSFERRING)
        )
        if transfer is None or transfer.status is not current:
            return False

        transfer.status = target
        wakeup = self._wakeups.get(file_id)
        if wakeup is not None and paused:
            wakeup.clear()
        elif wakeup is not None:
            wakeup.set()
        transfer.last_update_time = self.clock()
        self.on_update(transfer)
        if notify:
            self._send_control(TransferPause(file_id=file_id) if paused else TransferResume(file_id=file_id))
        logger.info("%s %s", "Paused" if paused else "Resumed", file_id)
        return True

    def cancel(self, file_id: str) -> bool:
        """Cancel a pending, transferring or paused transfer. No-op for finished ones."""
        transfer = self.sending.get(file_id) or self.receiving.get(file_id)
        if transfer is None or transfer.status.is_terminal:
            return False
        self._send_control(TransferCancel(file_id=file_id))
        self._cancel(transfer)
        return True

    def forget(self, transfer_id: str) -> bool:
        """Drop a finished record (completed or error). Live transfers are kept."""
        transfer = self.sending.get(transfer_id) or self.receiving.get(transfer_id)
        if transfer is None or not transfer.status.is_terminal:
            return False
        self.sending.pop(transfer_id, None)
        self.receiving.pop(transfer_id, None)
        return True

    def _cancel(self, transfer: Transfer):
        transfer.status = TransferStatus.CANCELLED
        transfer.last_update_time = self.clock()
        self.sending.pop(transfer.id, None)
        self.receiving.pop(transfer.id, None)
        self._release(transfer.id)
        logger.info("Cancelled %s", transfer.id)
        self.on_update(transfer)

    def _fail(self, transfer: Transfer, message: str):
        transfer.status = TransferStatus.ERROR
        transfer.error = message
        transfer.last_update_time = self.clock()
        self._release(transfer.id)
        self.on_update(transfer)
        self.on_error(transfer.id, message)

    def _release(self, transfer_id: str):
        self.arena.release(transfer_id)
        self._sources.pop(transfer_id, None)
        wakeup = self._wakeups.pop(transfer_id, None)
        if wakeup is not None:
            wakeup.set()  # let a paused loop notice and exit

    # --- receiving ---

    def handle_message(self, data):
        """Entry point for every frame the data channel delivers."""
        if isinstance(data, (bytes, bytearray, memoryview)):
            self._on_chunk(bytes(data))
            return

        try:
            msg = parse_control(data)
        except ValidationError as e:
            logger.error("Error parsing control message: %s", e)
            return

        if isinstance(msg, FileMetadataMessage):
            self._on_metadata(msg.metadata)
        elif isinstance(msg, TransferComplete):
            self._on_complete(msg.file_id)
        elif isinstance(msg, TransferCancel):
            transfer = self.sending.get(msg.file_id) or self.receiving.get(msg.file_id)
            if transfer is not None and not transfer.status.is_terminal:
                self._cancel(transfer)
        elif isinstance(msg, TransferPause):
            self._set_paused(msg.file_id, True, notify=False)
        elif isinstance(msg, TransferResume):
            self._set_paused(msg.file_id, False, notify=False)
        elif isinstance(msg, ChunkAck):
            logger.debug("chunk-ack %s #%d", msg.file_id, msg.chunk_index)
        else:
            raise AssertionError(f"unhandled control message {msg!r}")

    def active_receiving(self) -> Optional[ReceivingTransfer]:
        for transfer in self.receiving.values():
            if transfer.status in (TransferStatus.TRANSFERRING, TransferStatus.PAUSED):
                return transfer
        return None

    def received_chunks(self, transfer_id: str) -> List[bytes]:
        return self.arena.chunks(transfer_id)

    def _on_metadata(self, metadata: FileMetadata):
        previous = self.active_receiving()
        if previous is not None:
            logger.warning("New file announced before %s finished", previous.id)
            self._fail(previous, "Superseded by the next file before completion")

        now = self.clock()
        transfer = ReceivingTransfer(
            id=metadata.id, metadata=metadata, status=TransferStatus.TRANSFERRING,
            total_bytes=metadata.size, start_time=now, last_update_time=now,
            expected_chunks=metadata.total_chunks,
        )
        self.receiving[metadata.id] = transfer
        self.arena.open(metadata.id)
        logger.info("Receiving %s (%d bytes)", metadata.name, metadata.size)
        self.on_update(transfer)

    def _on_chunk(self, chunk: bytes):
        transfer = self.active_receiving()
        if transfer is None:
            logger.warning("Received chunk but no active transfer")
            return
        self.arena.append(transfer.id, chunk)
        transfer.chunks_received += 1
        transfer.bytes_transferred += len(chunk)
        transfer.record_progress(self.clock())
        self.on_update(transfer)

    def _on_complete(self, file_id: str):
        transfer = self.receiving.get(file_id)
        if transfer is None or transfer.status.is_terminal:
            return

        data = self.arena.assemble(file_id)
        if len(data) != transfer.metadata.size:
            self._fail(transfer, f"Expected {transfer.metadata.size} bytes, received {len(data)}")
            return

        transfer.status = TransferStatus.COMPLETED
        transfer.bytes_transferred = transfer.total_bytes
        transfer.record_progress(self.clock())
        self.on_update(transfer)
        logger.info("Received %s", transfer.metadata.name)
        self.on_complete(transfer, ReceivedFile(transfer.metadata, data))

    # --- plumbing ---

    def _send_control(self, msg):
        if self.channel is None or not self.connected:
            logger.warning("Not connected, dropping %s", msg.type)
            return
        self.channel.send_text(msg.to_json())

    async def close(self):
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self.arena.clear()
