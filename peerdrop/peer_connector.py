# peer_connector.py
# --------------------------------------------------------------------
# Per-endpoint negotiation: rendezvous websocket in, aiortc data
# channel out. Everything that changes connection state goes through
# one ordered event queue, so a session can be replayed event by event.
# --------------------------------------------------------------------

import asyncio, logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .config import Settings, get_settings
from .errors import NegotiationError, SignalingError, TransportError
from .messages import (
    Answer, CandidateDescriptor, ConnectionState, Error, IceCandidate, Join, Offer,
    PeerJoined, PeerLeft, SessionDescriptor, parse_envelope,
)

logger = logging.getLogger(__name__)

CHANNEL_LABEL = "file"


class Phase(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    PEER_LEFT = "peer-left"
    ERROR = "error"
    DISCONNECTED = "disconnected"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.PEER_LEFT, Phase.ERROR, Phase.DISCONNECTED)


# what the outside world sees for each internal phase
CONNECTION_STATES = {
    Phase.IDLE: ConnectionState.DISCONNECTED,
    Phase.CONNECTING: ConnectionState.CONNECTING,
    Phase.NEGOTIATING: ConnectionState.CONNECTING,
    Phase.CONNECTED: ConnectionState.CONNECTED,
    Phase.PEER_LEFT: ConnectionState.PEER_LEFT,
    Phase.ERROR: ConnectionState.ERROR,
    Phase.DISCONNECTED: ConnectionState.DISCONNECTED,
}


# ───────────────────────────── events ───────────────────────────────

@dataclass
class SignalReceived:
    envelope: Any


@dataclass
class SignalingClosed:
    reason: str = ""


@dataclass
class LocalCandidate:
    candidate: Any  # aiortc RTCIceCandidate


@dataclass
class PeerConnectionStateChanged:
    state: str


@dataclass
class ChannelOpened:
    pass


@dataclass
class ChannelClosed:
    pass


@dataclass
class CloseRequested:
    pass


# ──────────────────────────── transport ─────────────────────────────

class DataChannelTransport:
    """Thin wrapper over an RTCDataChannel: text/binary send plus backlog query."""

    def __init__(self, channel):
        self.channel = channel

    @property
    def is_open(self) -> bool:
        return self.channel.readyState == "open"

    @property
    def buffered_amount(self) -> int:
        return self.channel.bufferedAmount

    def send_text(self, text: str):
        self._send(text)

    def send_bytes(self, data: bytes):
        self._send(data)

    def _send(self, payload):
        if not self.is_open:
            raise TransportError(f"Data channel is {self.channel.readyState}")
        self.channel.send(payload)

    def close(self):
        self.channel.close()


def to_rtc_candidate(c: CandidateDescriptor):
    """CandidateDescriptor -> aiortc RTCIceCandidate, or None for end-of-candidates."""
    if not c.candidate:
        return None
    sdp = c.candidate[len("candidate:"):] if c.candidate.startswith("candidate:") else c.candidate
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = c.sdp_mid
    candidate.sdpMLineIndex = c.sdp_mline_index
    return candidate


def from_rtc_candidate(candidate) -> CandidateDescriptor:
    return CandidateDescriptor(
        candidate="candidate:" + candidate_to_sdp(candidate),
        sdp_mid=candidate.sdpMid,
        sdp_mline_index=candidate.sdpMLineIndex,
    )


def describe(desc) -> SessionDescriptor:
    return SessionDescriptor(kind=desc.type, sdp=desc.sdp)


def _noop(*_args):
    pass


# ──────────────────────────── connector ─────────────────────────────

class PeerConnector:
    """
    Drives one peer-to-peer session from ``connect(room)`` to a terminal state.

    Role is decided by the relay: whoever hears ``peer-joined`` is the
    initiator and sends the offer, whoever receives an ``offer`` answers.
    A connector is single use; call ``connect`` on a fresh instance to retry.

    Args:
        settings: signal_url and ice_servers are read from here.
        on_state_change: called with a ConnectionState whenever it changes.
        on_message: called with str (control) or bytes (chunk) for every
            data channel frame.
        on_error: called with a PeerDropError subclass for every reported
            problem, fatal or not.
        pc_factory: builds the peer connection from an RTCConfiguration.
        connector: coroutine function opening the rendezvous websocket.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 on_state_change: Callable = _noop, on_message: Callable = _noop,
                 on_error: Callable = _noop, pc_factory: Callable = RTCPeerConnection,
                 connector: Callable = ws_connect):
        self.settings = settings or get_settings()
        self.on_state_change, self.on_message, self.on_error = on_state_change, on_message, on_error
        self._pc_factory = pc_factory
        self._connector = connector

        self.phase = Phase.IDLE
        self.room_id: Optional[str] = None
        self.is_initiator = False
        self.ws = None
        self.pc = None
        self.transport: Optional[DataChannelTransport] = None

        self._events: asyncio.Queue = asyncio.Queue()
        self._pending_candidates: List[CandidateDescriptor] = []
        self._reader: Optional[asyncio.Task] = None
        self._runner: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return CONNECTION_STATES[self.phase]

    # --- public API ---

    async def connect(self, room_id: str):
        if self.phase is not Phase.IDLE:
            raise RuntimeError("PeerConnector is single use; create a new one to reconnect")
        self.room_id = room_id
        logger.info("Connecting to signalling server – room '%s'…", room_id)
        self._set_phase(Phase.CONNECTING)
        try:
            self.ws = await self._connector(self.settings.signal_url)
        except (OSError, InvalidHandshake, InvalidURI) as e:
            self._report(SignalingError(f"Signalling connection failed: {e}"))
            self._set_phase(Phase.ERROR)
            return

        await self._signal(Join(room_id=room_id))
        self._reader = asyncio.create_task(self._read_signaling())
        self._runner = asyncio.create_task(self._process_events())

    async def run(self):
        """Wait until the session reaches a terminal state."""
        if self._runner is not None:
            await asyncio.shield(self._runner)

    async def disconnect(self):
        if self.phase.is_terminal:
            return
        if self._runner is None or self._runner.done():
            await self._finish(Phase.DISCONNECTED)
            return
        self.post(CloseRequested())
        await self._runner

    def post(self, event):
        self._events.put_nowait(event)

    # --- event loop ---

    async def _read_signaling(self):
        reason = ""
        try:
            async for raw in self.ws:
                try:
                    envelope = parse_envelope(raw)
                except SignalingError:
                    logger.error("Error handling signaling message: %r", raw)
                    self._report(SignalingError("Failed to process signaling message"))
                    continue
                self.post(SignalReceived(envelope))
        except ConnectionClosed as e:
            reason = str(e)
        finally:
            self.post(SignalingClosed(reason))

    async def _process_events(self):
        while not self.phase.is_terminal:
            await self.handle(await self._events.get())

    async def handle(self, event):
        """Apply one event to the state machine."""
        if self.phase.is_terminal:
            logger.debug("Ignoring %s after session end", type(event).__name__)
            return

        if isinstance(event, SignalReceived):
            await self._on_signal(event.envelope)
        elif isinstance(event, LocalCandidate):
            await self._signal(IceCandidate(candidate=from_rtc_candidate(event.candidate)))
        elif isinstance(event, ChannelOpened):
            logger.info("-- channel open --")
            self._mark_connected()
        elif isinstance(event, PeerConnectionStateChanged):
            await self._on_pc_state(event.state)
        elif isinstance(event, ChannelClosed):
            logger.info("Data channel closed with peer.")
            if self.phase is Phase.CONNECTED:
                await self._finish(Phase.DISCONNECTED)
        elif isinstance(event, SignalingClosed):
            logger.info("Signalling connection closed")
            self.ws = None
            # once the data channel is up the relay is no longer needed
            if self.phase is not Phase.CONNECTED:
                await self._finish(Phase.ERROR, SignalingError("Signalling connection closed"))
        elif isinstance(event, CloseRequested):
            await self._finish(Phase.DISCONNECTED)
        else:
            raise AssertionError(f"unhandled event {event!r}")

    async def _on_signal(self, msg):
        logger.debug("Received signaling message: %s", msg.type)
        if isinstance(msg, PeerJoined):
            await self._start_offer()
        elif isinstance(msg, Offer):
            await self._handle_offer(msg.sdp)
        elif isinstance(msg, Answer):
            await self._handle_answer(msg.sdp)
        elif isinstance(msg, IceCandidate):
            await self._add_remote_candidate(msg.candidate)
        elif isinstance(msg, PeerLeft):
            logger.info("Peer left the room")
            await self._finish(Phase.PEER_LEFT)
        elif isinstance(msg, Error):
            # before negotiation starts (room full, ...) there is nothing to fall back on
            fatal = self.phase is Phase.CONNECTING
            self._report(SignalingError(msg.message))
            if fatal:
                await self._finish(Phase.ERROR)
        elif isinstance(msg, Join):
            logger.warning("Ignoring join echoed by the relay")
        else:
            raise AssertionError(f"unhandled envelope {msg!r}")

    async def _on_pc_state(self, state: str):
        logger.info("Connection state: %s", state)
        # "connected" only means DTLS is up; the data channel opens after it
        if state in ("failed", "disconnected"):
            await self._finish(Phase.ERROR, TransportError(f"Peer connection {state}"))
        elif state == "closed":
            await self._finish(Phase.DISCONNECTED)

    # --- negotiation ---

    def _create_peer_connection(self):
        pc = self.pc = self._pc_factory(self.settings.rtc_configuration())

        # a discarded connection still fires "closed" while shutting down
        @pc.on("connectionstatechange")
        def _state():
            if pc is self.pc:
                self.post(PeerConnectionStateChanged(pc.connectionState))

        # trickle: relay each local candidate the moment it is gathered
        @pc.on("icecandidate")
        def _ice(candidate):
            if candidate is not None and pc is self.pc:
                self.post(LocalCandidate(candidate))

        # the answerer learns about the channel from the offerer
        @pc.on("datachannel")
        def _on_dc(channel):
            if pc is self.pc:
                self._wire_channel(channel)

    def _wire_channel(self, channel):
        self.transport = DataChannelTransport(channel)

        @channel.on("open")
        def _open():
            self.post(ChannelOpened())

        @channel.on("close")
        def _close():
            self.post(ChannelClosed())

        @channel.on("message")
        def _msg(payload):
            self.on_message(payload)

        if channel.readyState == "open":
            self.post(ChannelOpened())

    async def _start_offer(self):
        if self.phase is not Phase.CONNECTING:
            self._report(NegotiationError(f"Unexpected peer-joined while {self.phase.value}"))
            return
        self.is_initiator = True
        self._create_peer_connection()
        self._wire_channel(self.pc.createDataChannel(CHANNEL_LABEL, ordered=True))
        try:
            await self.pc.setLocalDescription(await self.pc.createOffer())
        except Exception as e:
            await self._finish(Phase.ERROR, NegotiationError(f"Failed to create offer: {e}"))
            return
        await self._signal(Offer(sdp=describe(self.pc.localDescription)))
        self._set_phase(Phase.NEGOTIATING)
        logger.info("Offer sent – waiting for answer…")

    async def _handle_offer(self, offer: SessionDescriptor):
        if self.phase is not Phase.CONNECTING:
            self._report(NegotiationError(f"Ignoring offer while {self.phase.value}"))
            return
        self.is_initiator = False
        self._create_peer_connection()
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer.sdp, type=offer.kind))
        except Exception as e:
            # drop the half-built connection so a corrected offer can start over
            await self._close_pc()
            self._report(NegotiationError(f"Failed to handle offer: {e}"))
            return
        await self._flush_candidates()

        try:
            await self.pc.setLocalDescription(await self.pc.createAnswer())
        except Exception as e:
            await self._finish(Phase.ERROR, NegotiationError(f"Failed to create answer: {e}"))
            return
        await self._signal(Answer(sdp=describe(self.pc.localDescription)))
        self._set_phase(Phase.NEGOTIATING)
        logger.info("Answer sent – awaiting channel open…")

    async def _handle_answer(self, answer: SessionDescriptor):
        if not self.is_initiator or self.phase is not Phase.NEGOTIATING:
            self._report(NegotiationError(f"Unexpected answer while {self.phase.value}"))
            return
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer.sdp, type=answer.kind))
        except Exception as e:
            self._report(NegotiationError(f"Failed to handle answer: {e}"))
            return
        await self._flush_candidates()
        logger.info("Answer accepted – awaiting channel open…")

    async def _add_remote_candidate(self, candidate: CandidateDescriptor):
        if self.pc is None or self.pc.remoteDescription is None:
            # too early to apply; kept in arrival order until the remote description lands
            self._pending_candidates.append(candidate)
            logger.debug("Queued remote candidate (%d pending)", len(self._pending_candidates))
            return
        await self._apply_candidate(candidate)

    async def _flush_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: CandidateDescriptor):
        try:
            rtc_candidate = to_rtc_candidate(candidate)
            if rtc_candidate is None:
                logger.debug("End of remote candidates")
                return
            await self.pc.addIceCandidate(rtc_candidate)
        except Exception as e:
            logger.warning("Error adding ICE candidate: %s", e)
            self._report(NegotiationError(f"Failed to add ICE candidate: {e}"))

    # --- plumbing ---

    def _mark_connected(self):
        if self.phase in (Phase.CONNECTING, Phase.NEGOTIATING):
            self._set_phase(Phase.CONNECTED)

    def _set_phase(self, phase: Phase):
        if phase is self.phase:
            return
        before = self.state
        self.phase = phase
        logger.info("Phase -> %s", phase.value)
        if self.state is not before:
            self.on_state_change(self.state)

    def _report(self, error: Exception):
        logger.error("%s: %s", type(error).__name__, error)
        self.on_error(error)

    async def _signal(self, msg):
        if self.ws is None:
            logger.warning("No signalling connection, dropping %s", msg.type)
            return
        try:
            await self.ws.send(msg.to_json())
        except ConnectionClosed:
            logger.warning("Signalling connection closed, dropping %s", msg.type)

    async def _close_pc(self):
        pc, self.pc = self.pc, None
        if pc is not None:
            await pc.close()

    async def _finish(self, phase: Phase, error: Optional[Exception] = None):
        if error is not None:
            self._report(error)
        self._set_phase(phase)

        if self.transport is not None:
            self.transport.close()
            self.transport = None
        self._pending_candidates.clear()
        await self._close_pc()

        ws, self.ws = self.ws, None
        if ws is not None:
            # close() waits for queued frames to go out first
            await ws.close()
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
