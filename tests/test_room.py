from __future__ import annotations

import asyncio

import pytest

from room.base import Room
from room.local import LocalHub, LocalRoom
from room.relay import RelayRoom
from room.models import RoomStatus


class RecordingRoom(Room):
    def __init__(self, **kwargs):
        super().__init__(app_id="test-app", user_name="me", **kwargs)
        self.transmitted = []

    def _transmit(self, action, data, peer_id):
        self.transmitted.append((action, data, peer_id))


def test_sender_serialises_models():
    from transfer.models import TransferAck

    room = RecordingRoom()
    send = room.create_action("file-ack")
    send(TransferAck(file_id="f1", accepted=True), "peer-1")
    assert room.transmitted == [
        ("file-ack", {"file_id": "f1", "accepted": True, "reason": None}, "peer-1"),
    ]


def test_messages_before_handler_are_buffered_and_replayed():
    room = RecordingRoom()
    received = []
    room._deliver("greet", {"n": 1}, "peer-1")
    room._deliver("other", {"n": 2}, "peer-1")
    room._deliver("greet", {"n": 3}, "peer-2")

    room.create_action("greet", lambda data, peer: received.append((data["n"], peer)))

    assert received == [(1, "peer-1"), (3, "peer-2")]
    room._deliver("greet", {"n": 4}, "peer-1")
    assert received[-1] == (4, "peer-1")


def test_buffer_is_bounded():
    room = RecordingRoom(buffer_limit=2)
    received = []
    for n in range(4):
        room._deliver("greet", {"n": n}, "peer-1")
    room.create_action("greet", lambda data, peer: received.append(data["n"]))
    assert received == [2, 3]


def test_handler_errors_do_not_propagate():
    room = RecordingRoom()

    def broken(data, peer):
        raise RuntimeError("boom")

    room.create_action("greet", broken)
    room._deliver("greet", {}, "peer-1")


def test_room_codes_are_namespaced():
    assert RecordingRoom().full_room_code("abc") == "test-app:abc"


@pytest.mark.asyncio
async def test_local_rooms_track_membership():
    hub = LocalHub()
    alice = LocalRoom(hub, "Alice")
    bob = LocalRoom(hub, "Bob")
    joined, left, statuses = [], [], []
    alice.on_peer_join(lambda peer: joined.append(peer.name))
    alice.on_peer_leave(lambda peer: left.append(peer.name))
    alice.on_status_change(lambda state: statuses.append(state.status))

    await alice.join("lobby")
    await bob.join("lobby")
    assert alice.state.peer_count == 1
    assert list(bob.peers.values())[0].name == "Alice"

    await bob.leave()
    assert joined == ["Bob"]
    assert left == ["Bob"]
    assert statuses == [RoomStatus.CONNECTING, RoomStatus.CONNECTED]
    assert bob.state.status == RoomStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_local_delivery_is_async_and_ordered():
    hub = LocalHub()
    alice = LocalRoom(hub, "Alice")
    bob = LocalRoom(hub, "Bob")
    carol = LocalRoom(hub, "Carol")
    for room in (alice, bob, carol):
        await room.join("lobby")

    inbox = {"bob": [], "carol": []}
    bob.create_action("n", lambda data, peer: inbox["bob"].append(data))
    carol.create_action("n", lambda data, peer: inbox["carol"].append(data))
    send = alice.create_action("n")

    for n in range(5):
        send({"n": n}, bob.peer_id)
    send({"n": "all"})
    assert inbox["bob"] == []

    await asyncio.sleep(0)
    assert inbox["bob"] == [{"n": 0}, {"n": 1}, {"n": 2}, {"n": 3}, {"n": 4}, {"n": "all"}]
    assert inbox["carol"] == [{"n": "all"}]


@pytest.mark.asyncio
async def test_rooms_are_isolated():
    hub = LocalHub()
    alice = LocalRoom(hub, "Alice")
    bob = LocalRoom(hub, "Bob")
    await alice.join("one")
    await bob.join("two")
    assert alice.peers == {}

    other_app = LocalRoom(hub, "Mallory", app_id="other-app")
    await other_app.join("one")
    assert alice.peers == {}


@pytest.mark.asyncio
async def test_relay_room_applies_relay_frames():
    room = RelayRoom("ws://relay.invalid/signaling", "Alice", app_id="test-app")
    received = []
    room.create_action("file-ack", lambda data, peer: received.append((data, peer)))
    room._outbox = asyncio.Queue()

    room._handle_frame({"type": "joined", "members": [{"peerId": "b", "name": "Bob"}]})
    assert room.is_connected
    assert room.state.connection_id == 1
    assert room.peers["b"].name == "Bob"

    room._handle_frame({"type": "peer-joined", "peerId": "c", "name": "Carol"})
    room._handle_frame({"type": "peer-left", "peerId": "b"})
    assert list(room.peers) == ["c"]

    room._handle_frame({
        "type": "message",
        "fromPeerId": "c",
        "data": {"action": "file-ack", "payload": {"file_id": "f1"}},
    })
    assert received == [({"file_id": "f1"}, "c")]

    send = room.create_action("file-chunk")
    send({"n": 1}, "c")
    send({"n": 2})
    assert room._outbox.get_nowait() == {
        "type": "message",
        "targetPeerId": "c",
        "data": {"action": "file-chunk", "payload": {"n": 1}},
    }
    assert room._outbox.get_nowait() == {
        "type": "message",
        "data": {"action": "file-chunk", "payload": {"n": 2}},
    }
