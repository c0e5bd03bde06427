"""Room ownership across horizontally scaled relay instances.

Every room is served by exactly one instance. Ownership lives in a shared
expiring store as ``room:<id> -> machine id``; the store's set-if-absent is
the only arbiter. When the store cannot be reached, each instance behaves as
the sole owner of the rooms it hosts.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

from redis.exceptions import RedisError

from ..core.constants import ROOM_CLAIM_TTL_S

STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

class ClaimStore(Protocol):
    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool: ...
    async def get(self, key: str) -> Optional[str]: ...
    async def expire(self, key: str, ttl_s: int) -> bool: ...
    async def delete_if_owner(self, key: str, owner: str) -> bool: ...
    async def close(self) -> None: ...

_DELETE_IF_OWNER = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

class RedisClaimStore:
    def __init__(self, url: str, token: Optional[str] = None):
        import redis.asyncio as redis
        self._redis = redis.from_url(url, password=token, encoding="utf-8", decode_responses=True)
        self._delete_if_owner = self._redis.register_script(_DELETE_IF_OWNER)

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        return bool(await self._redis.set(key, value, nx=True, ex=ttl_s))

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def expire(self, key: str, ttl_s: int) -> bool:
        return bool(await self._redis.expire(key, ttl_s))

    async def delete_if_owner(self, key: str, owner: str) -> bool:
        return bool(await self._delete_if_owner(keys=[key], args=[owner]))

    async def close(self) -> None:
        await self._redis.aclose()

@dataclass
class ClaimResult:
    success: bool
    owner: Optional[str] = None

class RoomCoordinator:
    def __init__(self, machine_id: str, store: Optional[ClaimStore], logger, ttl_s: int = ROOM_CLAIM_TTL_S):
        self.machine_id = machine_id
        self.store = store
        self.logger = logger
        self.ttl_s = ttl_s

    @staticmethod
    def key(room_id: str) -> str:
        return f"room:{room_id}"

    async def claim(self, room_id: str) -> ClaimResult:
        if self.store is None:
            return ClaimResult(True)

        key = self.key(room_id)
        try:
            for _ in range(2):
                if await self.store.set_if_absent(key, self.machine_id, self.ttl_s):
                    return ClaimResult(True)
                owner = await self.store.get(key)
                if owner == self.machine_id:
                    return ClaimResult(True)
                if owner is not None:
                    self.logger.info("room_owned_elsewhere", room=room_id, owner=owner)
                    return ClaimResult(False, owner)
                # Claim expired between SET and GET; try once more.
        except STORE_ERRORS as e:
            self.logger.warning("claim_store_unavailable", room=room_id, op="claim", error=str(e))
        return ClaimResult(True)

    async def owner_of(self, room_id: str) -> Optional[str]:
        if self.store is None:
            return None
        try:
            return await self.store.get(self.key(room_id))
        except STORE_ERRORS as e:
            self.logger.warning("claim_store_unavailable", room=room_id, op="get", error=str(e))
            return None

    async def refresh(self, room_id: str) -> bool:
        if self.store is None:
            return True
        key = self.key(room_id)
        try:
            if await self.store.expire(key, self.ttl_s):
                return True
            return await self.store.set_if_absent(key, self.machine_id, self.ttl_s)
        except STORE_ERRORS as e:
            self.logger.warning("claim_store_unavailable", room=room_id, op="refresh", error=str(e))
            return False

    async def release(self, room_id: str):
        if self.store is None:
            return
        try:
            await self.store.delete_if_owner(self.key(room_id), self.machine_id)
        except STORE_ERRORS as e:
            self.logger.warning("claim_store_unavailable", room=room_id, op="release", error=str(e))

    async def refresh_forever(self, room_ids: Callable[[], Iterable[str]]):
        """Keep claims alive for every local room, refreshing at half the TTL."""
        interval = self.ttl_s / 2
        while True:
            await asyncio.sleep(interval)
            for room_id in list(room_ids()):
                await self.refresh(room_id)

    async def close(self):
        if self.store is not None:
            await self.store.close()
