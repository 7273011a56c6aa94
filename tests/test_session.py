import asyncio

import pytest

from peerdrop.cli import Session
from peerdrop.messages import ConnectionState, TransferStatus
from peerdrop.transfers import BytesSource

from conftest import FakePeerConnection

PAYLOAD = bytes(range(256)) * 4


@pytest.mark.asyncio
@pytest.mark.parametrize("sender_offers", [True, False], ids=["sender-offers", "sender-answers"])
async def test_first_file_arrives(settings, relay, tmp_path, sender_offers):
    sender = Session(settings, str(tmp_path / "unused"), pc_factory=FakePeerConnection, connector=relay.connect)
    receiver = Session(settings, str(tmp_path), pc_factory=FakePeerConnection, connector=relay.connect)

    # whoever joins first hears peer-joined and makes the offer
    first, second = (sender, receiver) if sender_offers else (receiver, sender)
    await first.connector.connect("room1")
    await second.connector.connect("room1")

    [file_id] = sender.engine.send_files([BytesSource("a.bin", PAYLOAD)])
    assert await asyncio.wait_for(sender.wait_connected(), 2)
    await asyncio.wait_for(sender.engine.wait_idle(), 5)

    assert sender.connector.is_initiator is sender_offers
    assert sender.engine.sending[file_id].status is TransferStatus.COMPLETED
    assert (tmp_path / "a.bin").read_bytes() == PAYLOAD
    assert receiver.connector.state is ConnectionState.CONNECTED
    # saved files are not kept around in the receiving map
    assert receiver.engine.receiving == {}

    await sender.connector.disconnect()
    await asyncio.wait_for(receiver.connector.run(), 2)
    assert receiver.connector.state is ConnectionState.PEER_LEFT
    await sender.engine.close()
    await receiver.engine.close()
