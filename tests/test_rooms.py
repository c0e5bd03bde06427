import asyncio

import pytest

from conftest import MemoryClaimStore, RecordingConnection
from partake.core.constants import ErrorCode
from partake.core.errors import CapacityError, RoomRedirect
from partake.core.framing import decode_relay
from partake.relay.coordinator import RoomCoordinator
from partake.relay.rooms import RoomRegistry


def make_registry(logger, store=None, machine_id="machine-a", **limits):
    return RoomRegistry(RoomCoordinator(machine_id, store, logger), logger, **limits)


@pytest.mark.asyncio
async def test_join_announces_peers_both_ways(logger):
    registry = make_registry(logger)
    a, b = RecordingConnection(), RecordingConnection()

    a_id = await registry.join("room1", a)
    assert a.json == []

    b_id = await registry.join("room1", b)
    assert a_id != b_id
    assert a.json == [{"type": "peer-joined", "peerId": b_id}]
    assert b.json == [{"type": "peer-joined", "peerId": a_id}]
    assert sorted(registry.members("room1")) == sorted([a_id, b_id])


@pytest.mark.asyncio
async def test_leave_broadcasts_and_empty_room_releases_claim(logger):
    store = MemoryClaimStore()
    registry = make_registry(logger, store)
    a, b = RecordingConnection(), RecordingConnection()
    a_id = await registry.join("room1", a)
    b_id = await registry.join("room1", b)
    assert store.data["room:room1"] == "machine-a"

    await registry.leave("room1", b_id)
    assert a.json[-1] == {"type": "peer-left", "peerId": b_id}
    assert registry.has_room("room1")

    await registry.leave("room1", a_id)
    assert not registry.has_room("room1")
    assert len(registry) == 0
    assert "room:room1" not in store.data

    # Leaving twice is harmless.
    await registry.leave("room1", a_id)


@pytest.mark.asyncio
async def test_room_capacity(logger):
    registry = make_registry(logger, max_peers_per_room=2)
    await registry.join("room1", RecordingConnection())
    await registry.join("room1", RecordingConnection())
    with pytest.raises(CapacityError) as exc:
        await registry.join("room1", RecordingConnection())
    assert exc.value.code == ErrorCode.ROOM_FULL
    assert len(registry.members("room1")) == 2


@pytest.mark.asyncio
async def test_server_capacity(logger):
    registry = make_registry(logger, max_rooms=1)
    await registry.join("room1", RecordingConnection())
    with pytest.raises(CapacityError) as exc:
        await registry.join("room2", RecordingConnection())
    assert exc.value.code == ErrorCode.SERVER_FULL
    # Joining an existing room is still allowed.
    await registry.join("room1", RecordingConnection())


@pytest.mark.asyncio
async def test_room_owned_elsewhere_redirects(logger):
    store = MemoryClaimStore({"room:room1": "machine-b"})
    registry = make_registry(logger, store)
    with pytest.raises(RoomRedirect) as exc:
        await registry.join("room1", RecordingConnection())
    assert exc.value.owner == "machine-b"
    assert not registry.has_room("room1")


@pytest.mark.asyncio
async def test_unreachable_store_still_hosts_rooms(logger):
    registry = make_registry(logger, MemoryClaimStore(fail=True))
    peer_id = await registry.join("room1", RecordingConnection())
    assert registry.members("room1") == [peer_id]
    await registry.leave("room1", peer_id)


@pytest.mark.asyncio
async def test_signal_and_binary_relay_reach_only_the_target(logger):
    registry = make_registry(logger)
    a, b, c = RecordingConnection(), RecordingConnection(), RecordingConnection()
    a_id = await registry.join("room1", a)
    b_id = await registry.join("room1", b)
    await registry.join("room1", c)
    c.json.clear()

    await registry.forward_signal("room1", b_id, a_id, {"sdp": {"type": "offer", "sdp": "v=0"}})
    assert a.json[-1] == {"type": "signal", "fromPeerId": b_id, "signal": {"sdp": {"type": "offer", "sdp": "v=0"}}}

    await registry.relay_binary("room1", a_id, b_id, b"ciphertext")
    assert [decode_relay(d) for d in b.binary] == [(a_id, b"ciphertext")]

    await registry.relay_binary("room1", a_id, "missing", b"lost")
    await registry.forward_signal("room2", a_id, b_id, {})
    assert c.json == [] and c.binary == []
    assert len(b.binary) == 1


class GatedClaimStore(MemoryClaimStore):
    """Parks every release until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.releasing = asyncio.Event()
        self.gate = asyncio.Event()

    async def delete_if_owner(self, key, owner):
        self.releasing.set()
        await self.gate.wait()
        return await super().delete_if_owner(key, owner)


@pytest.mark.asyncio
async def test_rejoin_during_release_keeps_the_new_claim(logger):
    store = GatedClaimStore()
    registry = make_registry(logger, store)
    peer_id = await registry.join("room1", RecordingConnection())

    leaving = asyncio.create_task(registry.leave("room1", peer_id))
    await asyncio.wait_for(store.releasing.wait(), 1)

    joining = asyncio.create_task(registry.join("room1", RecordingConnection()))
    await asyncio.sleep(0.02)
    assert not joining.done()

    store.gate.set()
    await leaving
    new_id = await asyncio.wait_for(joining, 1)

    assert registry.members("room1") == [new_id]
    assert store.data["room:room1"] == "machine-a"
