# server.py
# --------------------------------------------------------------------
# Rendezvous relay: pairs two endpoints per room and shuttles their
# offer / answer / ice-candidate envelopes across. Never sees file data.
# --------------------------------------------------------------------

import asyncio, logging
from http import HTTPStatus
from typing import Dict, Optional
from urllib.parse import urlsplit
from uuid import uuid4

from websockets.asyncio.server import serve as ws_serve
from websockets.exceptions import ConnectionClosed

from .config import Settings, get_settings
from .errors import SignalingError
from .messages import (
    ALREADY_IN_ROOM, NO_PEER, NOT_IN_ROOM, RELAYED, ROOM_FULL,
    Error, Join, PeerJoined, PeerLeft, parse_envelope,
)
from .rooms import JoinResult, RoomRegistry, run_sweeper

logger = logging.getLogger(__name__)


async def deliver(ws, data) -> bool:
    """Send one frame, tolerating a peer that has already gone away."""
    try:
        await ws.send(data)
        return True
    except ConnectionClosed:
        logger.warning("Dropped frame for a closed connection")
        return False


class RendezvousService:
    """
    One instance per server process. ``handler`` is handed to websockets and
    runs once per connected endpoint; all handlers share ``registry``.
    """

    def __init__(self, registry: Optional[RoomRegistry] = None):
        self.registry = registry if registry is not None else RoomRegistry()
        self.endpoint_rooms: Dict[str, str] = {}  # endpoint id -> room id

    async def handler(self, ws):
        endpoint_id = str(uuid4())
        logger.info("New endpoint connected: %s", endpoint_id)
        try:
            async for raw in ws:
                await self.on_message(endpoint_id, ws, raw)
        except ConnectionClosed as e:
            logger.info("Endpoint %s dropped: %s", endpoint_id, e)
        finally:
            await self.on_disconnect(endpoint_id)

    async def on_message(self, endpoint_id: str, ws, raw):
        try:
            msg = parse_envelope(raw)
            logger.debug("Message from %s: %s", endpoint_id, msg.type)

            if isinstance(msg, Join):
                await self._join(endpoint_id, ws, msg.room_id)
            elif isinstance(msg, RELAYED):
                await self._relay(endpoint_id, raw, msg.type)
            elif isinstance(msg, (PeerJoined, PeerLeft, Error)):
                # server -> endpoint only; nothing to do when an endpoint sends one
                logger.warning("Ignoring %s sent by endpoint %s", msg.type, endpoint_id)
            else:
                raise AssertionError(f"unhandled envelope {msg!r}")
        except SignalingError as e:
            logger.info("Rejected message from %s: %s", endpoint_id, e)
            await deliver(ws, Error(message=str(e)).to_json())

    async def _join(self, endpoint_id: str, ws, room_id: str):
        if endpoint_id in self.endpoint_rooms:
            raise SignalingError(ALREADY_IN_ROOM)

        async with self.registry.lock(room_id):
            self.registry.create_or_get(room_id)
            if self.registry.join(room_id, endpoint_id, ws) is not JoinResult.JOINED:
                raise SignalingError(ROOM_FULL)
            self.endpoint_rooms[endpoint_id] = room_id

            other = self.registry.other_endpoint(room_id, endpoint_id)
            if other is not None:
                await deliver(other, PeerJoined().to_json())
                logger.info("Notified peer in room %s of new join", room_id)

    async def _relay(self, endpoint_id: str, raw, kind: str):
        room_id = self.endpoint_rooms.get(endpoint_id)
        if room_id is None:
            raise SignalingError(NOT_IN_ROOM)

        other = self.registry.other_endpoint(room_id, endpoint_id)
        # forward the exact frame we received, not a re-serialization
        if other is None or not await deliver(other, raw):
            logger.warning("No peer to forward %s to in room %s", kind, room_id)
            raise SignalingError(NO_PEER)
        logger.debug("Forwarded %s in room %s", kind, room_id)

    async def on_disconnect(self, endpoint_id: str):
        logger.info("Endpoint disconnected: %s", endpoint_id)
        room_id = self.endpoint_rooms.pop(endpoint_id, None)
        if room_id is None:
            return

        async with self.registry.lock(room_id):
            other = self.registry.other_endpoint(room_id, endpoint_id)
            if other is not None:
                await deliver(other, PeerLeft().to_json())
                logger.info("Notified peer in room %s of disconnect", room_id)
            self.registry.leave(room_id, endpoint_id)


def only_path(path: str):
    """process_request hook: refuse the websocket upgrade on any other path."""

    def process_request(connection, request):
        if urlsplit(request.path).path != path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
        return None

    return process_request


async def serve(settings: Optional[Settings] = None, service: Optional[RendezvousService] = None):
    settings = settings or get_settings()
    service = service or RendezvousService()

    sweeper = asyncio.create_task(
        run_sweeper(service.registry, settings.sweep_interval, settings.room_ttl)
    )
    try:
        async with ws_serve(
            service.handler, settings.host, settings.port,
            process_request=only_path(settings.ws_path),
        ):
            logger.info("Signalling server listening on ws://%s:%d%s", settings.host, settings.port, settings.ws_path)
            await asyncio.Future()        # run forever
    finally:
        sweeper.cancel()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(serve())
