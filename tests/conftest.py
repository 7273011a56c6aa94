import asyncio
import json
from collections import defaultdict
from uuid import uuid4

import pytest
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from websockets.exceptions import ConnectionClosed

from peerdrop.config import Settings
from peerdrop.server import RendezvousService

SRFLX = "842163049 1 udp 1677729535 192.0.2.10 50000 typ srflx raddr 0.0.0.0 rport 0"
HOST = "1467250027 1 udp 2122260223 10.0.0.5 54400 typ host"


async def settle(rounds=30):
    """Let every ready callback and task run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settings():
    return Settings(
        chunk_size=4,
        max_buffered_amount=16,
        backpressure_delay=0.01,
        signal_url="ws://relay.test/ws",
    )


# ───────────────────────── transfer channel ─────────────────────────

class FakeChannel:
    """Records every frame; buffered_amount is set by the test."""

    def __init__(self):
        self.sent = []
        self.buffered_amount = 0

    def send_text(self, text):
        self.sent.append(text)

    def send_bytes(self, data):
        self.sent.append(bytes(data))

    def chunks(self):
        return [f for f in self.sent if isinstance(f, bytes)]

    def controls(self):
        return [json.loads(f) for f in self.sent if isinstance(f, str)]


@pytest.fixture
def channel():
    return FakeChannel()


# ─────────────────────────── websockets ─────────────────────────────

class ServerSocket:
    """What the rendezvous service sees for one endpoint."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send(self, data):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(data)

    def messages(self):
        return [json.loads(m) for m in self.sent]


class ClientSocket:
    """What a PeerConnector sees: an async-iterable websocket."""

    def __init__(self, on_send=None, on_close=None):
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()
        self._on_send, self._on_close = on_send, on_close

    async def send(self, data):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(data))
        if self._on_send is not None:
            await self._on_send(data)

    def feed(self, msg):
        self._inbox.put_nowait(msg if isinstance(msg, str) else json.dumps(msg))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self._inbox.put_nowait(None)
        if self._on_close is not None:
            await self._on_close()


class ServerToClient:
    def __init__(self, client):
        self.client = client

    async def send(self, data):
        if self.client.closed:
            raise ConnectionClosed(None, None)
        self.client.feed(data)


class MemoryRelay:
    """A RendezvousService reachable through in-memory sockets."""

    def __init__(self):
        self.service = RendezvousService()

    async def connect(self, url):
        endpoint_id = str(uuid4())
        holder = {}

        async def on_send(raw):
            await self.service.on_message(endpoint_id, holder["server"], raw)

        async def on_close():
            await self.service.on_disconnect(endpoint_id)

        client = ClientSocket(on_send, on_close)
        holder["server"] = ServerToClient(client)
        return client


@pytest.fixture
def relay():
    return MemoryRelay()


# ────────────────────────── peer connections ────────────────────────

class FakeEmitter:
    def __init__(self):
        self._handlers = defaultdict(list)

    def on(self, event):
        def register(fn):
            self._handlers[event].append(fn)
            return fn
        return register

    def emit(self, event, *args):
        for fn in list(self._handlers[event]):
            fn(*args)


class FakeDataChannel(FakeEmitter):
    def __init__(self, label, ready_state="connecting"):
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.sent = []
        self.remote = None  # the other end, once the two peers are linked

    def send(self, payload):
        self.sent.append(payload)
        if self.remote is not None and self.remote.readyState == "open":
            self.remote.emit("message", payload)

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def close(self):
        if self.readyState != "closed":
            self.readyState = "closed"
            self.emit("close")


def make_candidate(sdp=SRFLX, mid="0", index=0):
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = mid
    candidate.sdpMLineIndex = index
    return candidate


class FakePeerConnection(FakeEmitter):
    """
    Just enough RTCPeerConnection: descriptions are stored, each
    setLocalDescription trickles one candidate, and applying the answer on the
    offering side "connects" both ends. As with aiortc, the data channel opens
    (and reaches the answerer) only on a later loop turn.
    """

    network = []

    def __init__(self, configuration=None):
        super().__init__()
        self.configuration = configuration
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.added = []
        self.channels = []
        self.closed = False
        FakePeerConnection.network.append(self)

    def createDataChannel(self, label, ordered=True):
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return RTCSessionDescription(sdp="v=0 offer", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp="v=0 answer", type="answer")

    async def setLocalDescription(self, desc):
        self.localDescription = desc
        self.emit("icecandidate", make_candidate())

    async def setRemoteDescription(self, desc):
        if desc.sdp == "garbage":
            raise ValueError("malformed sdp")
        self.remoteDescription = desc
        if desc.type == "answer":
            self._establish()

    async def addIceCandidate(self, candidate):
        self.added.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"
        self.emit("connectionstatechange")

    def set_state(self, state):
        self.connectionState = state
        self.emit("connectionstatechange")

    def _establish(self):
        # like aiortc: DTLS reports "connected" first, the data channel opens on a later turn
        peer = next((pc for pc in FakePeerConnection.network if pc is not self and not pc.closed), None)
        if peer is not None:
            peer.set_state("connected")
        self.set_state("connected")
        asyncio.get_running_loop().call_soon(self._open_channels, peer)

    def _open_channels(self, peer):
        for channel in self.channels:
            if peer is not None and not peer.closed:
                remote = FakeDataChannel(channel.label, ready_state="open")
                channel.remote, remote.remote = remote, channel
                peer.emit("datachannel", remote)
            channel.open()


@pytest.fixture(autouse=True)
def fresh_network():
    FakePeerConnection.network = []
    yield
    FakePeerConnection.network = []
