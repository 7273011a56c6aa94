"""
Command line front-end.

    peerdrop serve [--host H] [--port P]
    peerdrop send ROOM FILE [FILE ...]
    peerdrop receive ROOM [--out DIR]

Both peers must use the same ROOM and point PEERDROP_SIGNAL_URL (or
``--signal-url``) at the same rendezvous server.
"""
import argparse, asyncio, logging, sys

from .config import get_settings
from .messages import ConnectionState, TransferStatus
from .peer_connector import PeerConnector
from .server import serve
from .transfers import FileSource, TransferEngine

logger = logging.getLogger("peerdrop")


def _progress(transfer):
    if transfer.total_bytes:
        percent = round(transfer.bytes_transferred / transfer.total_bytes * 100)
    else:
        percent = 100
    logger.info("%s %s: %d%% (%d KB/s, eta %.1fs) [%s]", transfer.direction, transfer.metadata.name,
                percent, int(transfer.speed / 1024), transfer.eta, transfer.status.value)


class Session:
    """Glue between one PeerConnector and one TransferEngine."""

    def __init__(self, settings, out_dir=None, **connector_options):
        self.settings = settings
        self.out_dir = out_dir or settings.received_files_dir
        self.connected = asyncio.Event()
        self.engine = TransferEngine(
            settings=settings, on_update=_progress,
            on_complete=self._on_complete, on_error=self._on_transfer_error,
        )
        self.connector = PeerConnector(
            settings, on_state_change=self._on_state, on_message=self.engine.handle_message,
            on_error=lambda e: logger.warning("%s", e), **connector_options,
        )

    def _on_state(self, state: ConnectionState):
        logger.info("Status: %s", state.value)
        if state is ConnectionState.CONNECTED:
            self.engine.attach(self.connector.transport)
            self.connected.set()
        self.engine.set_connection_state(state)

    def _on_complete(self, transfer, received):
        if received is not None:
            path = received.save(self.out_dir)
            logger.info("[file] '%s' received -> %s", received.name, path)
            self.engine.forget(transfer.id)

    def _on_transfer_error(self, transfer_id, message):
        logger.error("Transfer %s failed: %s", transfer_id, message)

    async def wait_connected(self):
        _, pending = await asyncio.wait(
            [asyncio.create_task(self.connected.wait()), asyncio.create_task(self.connector.run())],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        return self.connected.is_set()

    async def drain(self):
        # let the last frames leave before the channel is torn down
        transport = self.connector.transport
        while transport is not None and transport.is_open and transport.buffered_amount > 0:
            await asyncio.sleep(self.settings.backpressure_delay)


async def _send(settings, room, paths):
    sources = [FileSource(p) for p in paths]
    session = Session(settings)
    await session.connector.connect(room)
    session.engine.send_files(sources)
    if not await session.wait_connected():
        return 1
    await session.engine.wait_idle()
    failed = [t for t in session.engine.sending.values() if t.status is not TransferStatus.COMPLETED]
    await session.drain()
    await session.connector.disconnect()
    await session.engine.close()
    return 1 if failed else 0


async def _receive(settings, room, out_dir):
    session = Session(settings, out_dir)
    await session.connector.connect(room)
    await session.connector.run()
    await session.engine.close()
    return 0 if session.connector.state is not ConnectionState.ERROR else 1


def build_parser():
    parser = argparse.ArgumentParser(prog="peerdrop", description="Peer-to-peer file drop over WebRTC")
    parser.add_argument("--signal-url", help="rendezvous websocket URL")
    parser.add_argument("--log-level", help="logging level (default from settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="run the rendezvous server")
    p_serve.add_argument("--host")
    p_serve.add_argument("--port", type=int)

    p_send = sub.add_parser("send", help="send files to the peer in ROOM")
    p_send.add_argument("room")
    p_send.add_argument("files", nargs="+")

    p_recv = sub.add_parser("receive", help="receive files from the peer in ROOM")
    p_recv.add_argument("room")
    p_recv.add_argument("--out", help="directory for received files")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    overrides = {k: v for k, v in {
        "signal_url": args.signal_url,
        "log_level": args.log_level,
        "host": getattr(args, "host", None),
        "port": getattr(args, "port", None),
    }.items() if v is not None}
    settings = get_settings().model_copy(update=overrides)
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        if args.command == "serve":
            asyncio.run(serve(settings))
            return 0
        if args.command == "send":
            return asyncio.run(_send(settings, args.room, args.files))
        return asyncio.run(_receive(settings, args.room, args.out))
    except FileNotFoundError as e:
        logger.error("File not found: %s", e)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
