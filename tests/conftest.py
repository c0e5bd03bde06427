from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest
import structlog

from partake.core.framing import decode_relay
from partake.protocol.link import DirectLink
from partake.protocol.signaling import SignalEvent


@pytest.fixture
def logger():
    return structlog.get_logger("tests")


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class MemoryClaimStore:
    """Claim store backed by a dict; TTLs are recorded, not enforced."""

    def __init__(self, initial: Optional[Dict[str, str]] = None, fail: bool = False):
        self.data: Dict[str, str] = dict(initial or {})
        self.ttls: Dict[str, int] = {}
        self.expired: List[str] = []
        self.fail = fail
        self.closed = False

    def _check(self):
        if self.fail:
            raise ConnectionError("store unreachable")

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        self._check()
        if key in self.data:
            return False
        self.data[key] = value
        self.ttls[key] = ttl_s
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.data.get(key)

    async def expire(self, key: str, ttl_s: int) -> bool:
        self._check()
        self.expired.append(key)
        if key not in self.data:
            return False
        self.ttls[key] = ttl_s
        return True

    async def delete_if_owner(self, key: str, owner: str) -> bool:
        self._check()
        if self.data.get(key) != owner:
            return False
        del self.data[key]
        return True

    async def close(self) -> None:
        self.closed = True


class RecordingConnection:
    def __init__(self):
        self.json: List[Dict[str, Any]] = []
        self.binary: List[bytes] = []

    async def send_json(self, msg):
        self.json.append(msg)

    async def send_bytes(self, data):
        self.binary.append(data)


class FakeRelay:
    def __init__(self):
        self.sent: List[Tuple[str, bytes]] = []

    async def send_relay(self, target_peer_id: str, data: bytes):
        self.sent.append((target_peer_id, data))


class MemoryLink(DirectLink):
    """In-process stand-in for a data channel. Paired links deliver to each other."""

    def __init__(self, fail_after: Optional[int] = None):
        super().__init__()
        self.peer: Optional[MemoryLink] = None
        self.fail_after = fail_after
        self.sent: List[bytes] = []
        self.signals: List[Any] = []
        self.buffered = 0
        self.started = False
        self.closed = False
        self._open = False

    @property
    def buffered_amount(self) -> int:
        return self.buffered

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self):
        self._open = True
        self._emit("open")

    def drain(self, amount: int = 0):
        self.buffered = amount
        self._emit("drain")

    async def start(self):
        self.started = True

    async def handle_signal(self, signal):
        self.signals.append(signal)

    async def send(self, data: bytes):
        if not self._open:
            raise ConnectionError("link not open")
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise ConnectionError("link broke")
        self.sent.append(data)
        if self.peer is not None:
            self.peer._emit("message", data=data)

    def _remote_closed(self):
        if not self.closed:
            self._open = False
            self._emit("close")

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self._open = False
        self._emit("close")
        if self.peer is not None:
            self.peer._remote_closed()


class LinkHub:
    """Link factory that pairs the two sides of each peer connection and opens them."""

    def __init__(self, fail_after: Optional[int] = None, auto_open: bool = True):
        self.fail_after = fail_after
        self.auto_open = auto_open
        self.links: Dict[Tuple[str, str], MemoryLink] = {}

    def factory(self, local_id: str, remote_id: str, initiator: bool, send_signal) -> MemoryLink:
        link = MemoryLink(fail_after=self.fail_after if initiator else None)
        self.links[(local_id, remote_id)] = link
        other = self.links.get((remote_id, local_id))
        if other is not None:
            link.peer, other.peer = other, link
            if self.auto_open:
                link.open()
                other.open()
        return link


class MemorySignaling:
    """Signaling client that talks to a RoomRegistry in-process.

    It is also the registry's connection object, so relay traffic goes
    through the registry's own envelope handling.
    """

    def __init__(self, registry, room_id: str):
        self.registry = registry
        self.room_id = room_id
        self.events: asyncio.Queue = asyncio.Queue()
        self.peer_id: Optional[str] = None
        self.relayed = 0

    async def send_json(self, msg):
        msg_type = msg["type"]
        if msg_type in ("peer-joined", "peer-left"):
            self.events.put_nowait(SignalEvent(msg_type, peer_id=msg["peerId"]))
        elif msg_type == "signal":
            self.events.put_nowait(SignalEvent("signal", peer_id=msg["fromPeerId"], signal=msg["signal"]))

    async def send_bytes(self, data: bytes):
        from_peer, payload = decode_relay(data)
        self.events.put_nowait(SignalEvent("relay", peer_id=from_peer, data=payload))

    async def connect(self) -> str:
        self.peer_id = await self.registry.join(self.room_id, self)
        return self.peer_id

    async def send_signal(self, target_peer_id: str, signal):
        await self.registry.forward_signal(self.room_id, self.peer_id, target_peer_id, signal)

    async def send_relay(self, target_peer_id: str, data: bytes):
        self.relayed += 1
        await self.registry.relay_binary(self.room_id, self.peer_id, target_peer_id, data)

    async def close(self):
        if self.peer_id:
            await self.registry.leave(self.room_id, self.peer_id)
            self.peer_id = None
