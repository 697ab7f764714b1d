from __future__ import annotations

import asyncio
import os

import pytest

from conftest import wait_for
from room.local import LocalHub, LocalRoom
from transfer.coordinator import TransferCoordinator
from transfer.errors import NotConnectedError, UnknownPeerError
from transfer.models import OutgoingFile, TransferDirection, TransferStatus


async def join_all(code: str, *rooms: LocalRoom) -> None:
    for room in rooms:
        await room.join(code)


def status_of(coordinator: TransferCoordinator, file_id: str):
    record = coordinator.get_transfer(file_id)
    return record.status if record else None


@pytest.fixture
def hub():
    return LocalHub()


@pytest.fixture
def alice_room(hub):
    return LocalRoom(hub, "Alice")


@pytest.fixture
def bob_room(hub):
    return LocalRoom(hub, "Bob")


@pytest.mark.asyncio
async def test_end_to_end_transfer(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room)
    await join_all("lobby", alice_room, bob_room)

    data = os.urandom(40960)
    record = alice.send_file(OutgoingFile(name="photo.jpg", data=data, type="image/jpeg"))
    assert record.peer_id == bob_room.peer_id
    assert record.peer_name == "Bob"

    await wait_for(lambda: status_of(bob, record.id) == TransferStatus.COMPLETED)
    await wait_for(lambda: status_of(alice, record.id) == TransferStatus.COMPLETED)

    received = bob.get_transfer(record.id)
    assert received.direction == TransferDirection.RECEIVE
    assert received.payload == data
    assert received.type == "image/jpeg"
    assert received.peer_name == "Alice"
    assert received.peer_id == alice_room.peer_id
    assert alice.get_transfer(record.id).progress == 100


@pytest.mark.asyncio
async def test_concurrent_transfers(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room)
    await join_all("lobby", alice_room, bob_room)

    first = os.urandom(100_000)
    second = os.urandom(70_000)
    r1 = alice.send_file(OutgoingFile(name="one.bin", data=first))
    r2 = bob.send_file(OutgoingFile(name="two.bin", data=second))

    await wait_for(lambda: status_of(bob, r1.id) == TransferStatus.COMPLETED)
    await wait_for(lambda: status_of(alice, r2.id) == TransferStatus.COMPLETED)
    assert bob.get_transfer(r1.id).payload == first
    assert alice.get_transfer(r2.id).payload == second


@pytest.mark.asyncio
async def test_rejection_via_callback(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(
        bob_room,
        on_file_receive_request=lambda metadata, accept, reject: reject("Too big"),
    )
    await join_all("lobby", alice_room, bob_room)

    record = alice.send_file(OutgoingFile(name="huge.iso", data=b"x" * 10))
    await wait_for(lambda: status_of(alice, record.id) == TransferStatus.FAILED)

    assert alice.get_transfer(record.id).error == "Too big"
    assert status_of(bob, record.id) == TransferStatus.FAILED


@pytest.mark.asyncio
async def test_prompted_accept(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room, auto_accept=False)
    events = []

    async def on_event(kind, data):
        events.append((kind, data))

    bob.on_event(on_event)
    await join_all("lobby", alice_room, bob_room)

    record = alice.send_file(OutgoingFile(name="notes.txt", data=b"hello bob"))
    await wait_for(lambda: any(kind == "transfer_request" for kind, _ in events))
    assert status_of(bob, record.id) == TransferStatus.PENDING
    assert status_of(alice, record.id) == TransferStatus.PENDING

    assert bob.respond_to_request(record.id, accept=True)
    await wait_for(lambda: status_of(bob, record.id) == TransferStatus.COMPLETED)
    assert bob.get_transfer(record.id).payload == b"hello bob"

    await wait_for(lambda: any(kind == "notification" for kind, _ in events))
    notification = next(data for kind, data in events if kind == "notification")
    assert notification["type"] == "success"
    assert bob.respond_to_request(record.id, accept=True) is False


@pytest.mark.asyncio
async def test_answer_from_request_event_is_honoured(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room, auto_accept=False, accept_timeout=0.3)
    answers = []

    async def on_event(kind, data):
        if kind == "transfer_request":
            answers.append(bob.respond_to_request(data["id"], accept=True))

    bob.on_event(on_event)
    await join_all("lobby", alice_room, bob_room)

    record = alice.send_file(OutgoingFile(name="notes.txt", data=b"right away"))
    await wait_for(lambda: status_of(alice, record.id) == TransferStatus.COMPLETED)
    assert answers == [True]
    assert bob.get_transfer(record.id).payload == b"right away"


@pytest.mark.asyncio
async def test_prompt_times_out(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    TransferCoordinator(bob_room, auto_accept=False, accept_timeout=0.02)
    await join_all("lobby", alice_room, bob_room)

    record = alice.send_file(OutgoingFile(name="notes.txt", data=b"hello"))
    await wait_for(lambda: status_of(alice, record.id) == TransferStatus.FAILED)
    assert "Timed out" in alice.get_transfer(record.id).error


@pytest.mark.asyncio
async def test_removing_pending_prompt_rejects(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room, auto_accept=False)
    await join_all("lobby", alice_room, bob_room)

    record = alice.send_file(OutgoingFile(name="notes.txt", data=b"hello"))
    await wait_for(lambda: status_of(bob, record.id) == TransferStatus.PENDING)
    await asyncio.sleep(0.01)
    bob.remove_transfer(record.id)

    await wait_for(lambda: status_of(alice, record.id) == TransferStatus.FAILED)
    assert bob.get_transfer(record.id) is None


@pytest.mark.asyncio
async def test_sender_cancellation_stops_stream(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room)
    await join_all("lobby", alice_room, bob_room)

    # 64 chunks, paced in bursts of 5
    record = alice.send_file(OutgoingFile(name="big.bin", data=os.urandom(64 * 16384)))
    await wait_for(lambda: status_of(alice, record.id) == TransferStatus.TRANSFERRING)
    alice.remove_transfer(record.id)

    await asyncio.sleep(0.3)
    assert alice.get_transfer(record.id) is None
    assert status_of(bob, record.id) == TransferStatus.TRANSFERRING
    assert bob.get_transfer(record.id).progress < 100


@pytest.mark.asyncio
async def test_download_file(alice_room, bob_room, tmp_path):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room, save_dir=str(tmp_path))
    await join_all("lobby", alice_room, bob_room)

    record = alice.send_file(OutgoingFile(name="photo.jpg", data=b"jpeg bytes"))
    await wait_for(lambda: status_of(bob, record.id) == TransferStatus.COMPLETED)

    first = await bob.download_file(record.id)
    second = await bob.download_file(record.id)
    assert first == tmp_path / "photo.jpg"
    assert second == tmp_path / "photo (1).jpg"
    assert first.read_bytes() == b"jpeg bytes"

    # Only completed receive records can be saved
    assert await alice.download_file(record.id, save_dir=str(tmp_path)) is None
    assert await bob.download_file("unknown") is None


@pytest.mark.asyncio
async def test_send_errors(hub, alice_room):
    alice = TransferCoordinator(alice_room)
    file = OutgoingFile(name="a.txt", data=b"a")

    with pytest.raises(NotConnectedError):
        alice.send_file(file)

    await alice_room.join("lobby")
    with pytest.raises(NotConnectedError):
        alice.send_file(file)

    bob_room = LocalRoom(hub, "Bob")
    await bob_room.join("lobby")
    with pytest.raises(UnknownPeerError):
        alice.send_file(file, target_peer_id="nobody")
    assert alice.transfers == []


@pytest.mark.asyncio
async def test_default_target_is_first_peer(hub, alice_room, bob_room):
    carol_room = LocalRoom(hub, "Carol")
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room)
    carol = TransferCoordinator(carol_room)
    await join_all("lobby", alice_room, bob_room, carol_room)

    record = alice.send_file(OutgoingFile(name="a.txt", data=b"for bob"))
    await wait_for(lambda: status_of(alice, record.id) == TransferStatus.COMPLETED)
    assert bob.get_transfer(record.id).payload == b"for bob"
    assert carol.transfers == []

    targeted = alice.send_file(OutgoingFile(name="b.txt", data=b"for carol"), carol_room.peer_id)
    await wait_for(lambda: status_of(carol, targeted.id) == TransferStatus.COMPLETED)
    assert bob.get_transfer(targeted.id) is None


@pytest.mark.asyncio
async def test_rewires_after_reconnect(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room)
    await join_all("lobby", alice_room, bob_room)
    first_connection = bob_room.state.connection_id

    await bob_room.leave()
    await bob_room.join("lobby")
    assert bob_room.state.connection_id == first_connection + 1

    record = alice.send_file(OutgoingFile(name="a.txt", data=b"again"))
    await wait_for(lambda: status_of(bob, record.id) == TransferStatus.COMPLETED)


@pytest.mark.asyncio
async def test_peer_leaving_fails_in_flight_transfers(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    TransferCoordinator(bob_room, auto_accept=False)
    await join_all("lobby", alice_room, bob_room)

    record = alice.send_file(OutgoingFile(name="a.txt", data=b"hello"))
    await asyncio.sleep(0.01)
    await bob_room.leave()

    record = alice.get_transfer(record.id)
    assert record.status == TransferStatus.FAILED
    assert record.error == "Peer disconnected"


@pytest.mark.asyncio
async def test_clear_and_reset(alice_room, bob_room):
    alice = TransferCoordinator(alice_room)
    bob = TransferCoordinator(bob_room)
    await join_all("lobby", alice_room, bob_room)

    record = alice.send_file(OutgoingFile(name="a.txt", data=b"hello"))
    await wait_for(lambda: status_of(bob, record.id) == TransferStatus.COMPLETED)

    bob.clear_transfers()
    assert bob.transfers == []

    await alice.reset()
    assert alice.transfers == []
    assert not alice_room.is_connected
    assert bob_room.peers == {}
