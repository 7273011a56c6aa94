"""
In-memory room store for the rendezvous server.

A room pairs at most two endpoints. It appears on the first join to an unseen
id and disappears the moment its last endpoint leaves; a background sweep
catches any empty room that slipped through. Nothing here ever closes a
connection: only the room-to-endpoint association is touched.
"""
import asyncio, logging, time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_ENDPOINTS = 2


class JoinResult(Enum):
    JOINED = "joined"
    FULL = "full"
    MISSING = "missing"


@dataclass
class Room:
    id: str
    endpoints: Dict[str, Any] = field(default_factory=dict)  # endpoint id -> connection handle
    created_at: float = field(default_factory=time.time)

    @property
    def is_full(self) -> bool:
        return len(self.endpoints) >= MAX_ENDPOINTS

    @property
    def is_empty(self) -> bool:
        return not self.endpoints


class RoomRegistry:
    """
    Process-wide mapping of room id -> Room.

    The plain methods are synchronous, so each one runs to completion without
    yielding to the event loop. Handlers that need a read-modify-notify
    sequence on one room wrap it in ``async with registry.lock(room_id)``;
    different room ids never wait on each other.
    """

    def __init__(self, clock=time.time):
        self._rooms: Dict[str, Room] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._clock = clock

    def __len__(self):
        return len(self._rooms)

    def __contains__(self, room_id):
        return room_id in self._rooms

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def create_or_get(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            room = self._rooms[room_id] = Room(id=room_id, created_at=self._clock())
            logger.info("Created room %s", room_id)
        return room

    def join(self, room_id: str, endpoint_id: str, handle) -> JoinResult:
        room = self._rooms.get(room_id)
        if room is None:
            logger.error("Room not found: %s", room_id)
            return JoinResult.MISSING
        if endpoint_id in room.endpoints:
            return JoinResult.JOINED
        if room.is_full:
            logger.warning("Room %s is full", room_id)
            return JoinResult.FULL
        room.endpoints[endpoint_id] = handle
        logger.info("Endpoint %s joined room %s (%d/%d)", endpoint_id, room_id, len(room.endpoints), MAX_ENDPOINTS)
        return JoinResult.JOINED

    def leave(self, room_id: str, endpoint_id: str) -> None:
        room = self._rooms.get(room_id)
        if room is None:
            return
        room.endpoints.pop(endpoint_id, None)
        logger.info("Endpoint %s left room %s (%d/%d)", endpoint_id, room_id, len(room.endpoints), MAX_ENDPOINTS)
        # the remaining endpoint stays connected; only an empty room goes away
        if room.is_empty:
            del self._rooms[room_id]
            logger.info("Removed empty room %s", room_id)

    def other_endpoint(self, room_id: str, endpoint_id: str):
        room = self._rooms.get(room_id)
        if room is None:
            return None
        for eid, handle in room.endpoints.items():
            if eid != endpoint_id:
                return handle
        return None

    def sweep(self, now: Optional[float] = None, ttl: float = 3600) -> List[str]:
        """Drop empty rooms older than ``ttl`` seconds. Returns the removed ids."""
        now = self._clock() if now is None else now
        stale = [rid for rid, room in self._rooms.items() if room.is_empty and now - room.created_at > ttl]
        for rid in stale:
            del self._rooms[rid]
            logger.info("Swept empty room %s", rid)
        return stale

    @asynccontextmanager
    async def lock(self, room_id: str):
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[room_id] -= 1
            if not self._lock_users[room_id]:
                del self._lock_users[room_id]
                del self._locks[room_id]


async def run_sweeper(registry: RoomRegistry, interval: float, ttl: float):
    """Periodically evict stale empty rooms. Runs until cancelled."""
    while True:
        await asyncio.sleep(interval)
        removed = registry.sweep(ttl=ttl)
        if removed:
            logger.info("Sweep removed %d empty room(s)", len(removed))
