from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional, Protocol

from ..core.constants import MAX_ROOMS, MAX_PEERS_PER_ROOM, ErrorCode
from ..core.crypto import generate_peer_id
from ..core.errors import CapacityError, RoomRedirect
from ..core.framing import encode_relay
from .coordinator import RoomCoordinator

class PeerConnection(Protocol):
    async def send_json(self, msg: Dict[str, Any]) -> None: ...
    async def send_bytes(self, data: bytes) -> None: ...

class Room:
    def __init__(self, room_id: str):
        self.room_id = room_id
        self.members: Dict[str, PeerConnection] = {}
        self.lock = asyncio.Lock()
        self.claimed = False
        self.closed = False

class RoomRegistry:
    """Rooms hosted by this instance.

    The registry lock guards only the room map; each room's own lock
    serializes join, leave and membership broadcasts within that room.
    """

    def __init__(
        self,
        coordinator: RoomCoordinator,
        logger,
        max_rooms: int = MAX_ROOMS,
        max_peers_per_room: int = MAX_PEERS_PER_ROOM,
    ):
        self.coordinator = coordinator
        self.logger = logger
        self.max_rooms = max_rooms
        self.max_peers_per_room = max_peers_per_room
        self.rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self.rooms)

    def room_ids(self) -> List[str]:
        return list(self.rooms)

    def has_room(self, room_id: str) -> bool:
        return room_id in self.rooms

    def members(self, room_id: str) -> List[str]:
        room = self.rooms.get(room_id)
        return list(room.members) if room else []

    async def _get_or_create(self, room_id: str) -> Room:
        async with self._lock:
            room = self.rooms.get(room_id)
            if room is None or room.closed:
                if room is None and len(self.rooms) >= self.max_rooms:
                    raise CapacityError("Server at capacity", ErrorCode.SERVER_FULL)
                room = Room(room_id)
                self.rooms[room_id] = room
            return room

    async def _discard(self, room: Room):
        room.closed = True
        async with self._lock:
            if self.rooms.get(room.room_id) is room:
                del self.rooms[room.room_id]

    async def _send_quiet(self, conn: PeerConnection, msg: Dict[str, Any]):
        try:
            await conn.send_json(msg)
        except Exception as e:
            self.logger.debug("send_failed", type=msg.get("type"), error=str(e))

    async def join(self, room_id: str, conn: PeerConnection) -> str:
        """Add conn to the room and return its server-assigned peer id."""
        while True:
            room = await self._get_or_create(room_id)
            async with room.lock:
                if room.closed:
                    continue

                if not room.claimed:
                    result = await self.coordinator.claim(room_id)
                    if not result.success:
                        if not room.members:
                            await self._discard(room)
                        raise RoomRedirect(result.owner)
                    room.claimed = True

                if len(room.members) >= self.max_peers_per_room:
                    raise CapacityError("Room is full", ErrorCode.ROOM_FULL)

                peer_id = generate_peer_id()
                while peer_id in room.members:
                    peer_id = generate_peer_id()

                for existing_id, existing in list(room.members.items()):
                    await self._send_quiet(existing, {"type": "peer-joined", "peerId": peer_id})
                    await self._send_quiet(conn, {"type": "peer-joined", "peerId": existing_id})

                room.members[peer_id] = conn
                self.logger.info("peer_joined", machine=self.coordinator.machine_id,
                                 room=room_id, peer=peer_id, peers=len(room.members))
                return peer_id

    async def leave(self, room_id: str, peer_id: str):
        room = self.rooms.get(room_id)
        if room is None:
            return

        async with room.lock:
            if room.members.pop(peer_id, None) is None:
                return
            for conn in list(room.members.values()):
                await self._send_quiet(conn, {"type": "peer-left", "peerId": peer_id})
            emptied = not room.members
            if emptied:
                room.closed = True

        self.logger.info("peer_left", machine=self.coordinator.machine_id, room=room_id, peer=peer_id)
        if not emptied:
            return

        # Released under the registry lock: a rejoin either replaced the room
        # already, and keeps the claim, or waits until the release is done.
        async with self._lock:
            current = self.rooms.get(room_id)
            if current is room:
                del self.rooms[room_id]
                current = None
            if current is None and room.claimed:
                await self.coordinator.release(room_id)
        self.logger.info("room_closed", room=room_id)

    def _member(self, room_id: str, peer_id: str) -> Optional[PeerConnection]:
        room = self.rooms.get(room_id)
        if room is None:
            return None
        return room.members.get(peer_id)

    async def forward_signal(self, room_id: str, from_peer_id: str, target_peer_id: str, signal: Any):
        target = self._member(room_id, target_peer_id)
        if target is None:
            return
        await self._send_quiet(target, {"type": "signal", "fromPeerId": from_peer_id, "signal": signal})

    async def relay_binary(self, room_id: str, from_peer_id: str, target_peer_id: str, payload: bytes):
        target = self._member(room_id, target_peer_id)
        if target is None:
            return
        try:
            await target.send_bytes(encode_relay(from_peer_id, payload))
        except Exception as e:
            self.logger.debug("relay_send_failed", room=room_id, target=target_peer_id, error=str(e))
