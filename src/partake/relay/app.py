from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from ..core.config import Settings, get_settings
from ..core.constants import PROTO_VER, BINARY_RELAY, REDIRECT_CLOSE_CODE, ErrorCode
from ..core.errors import CapacityError, ProtocolError, RoomRedirect
from ..core.framing import decode_relay
from ..core.validation import fuzz_resistant_json_loads, json_dumps, is_valid_room_id
from .coordinator import ClaimStore, RedisClaimStore, RoomCoordinator
from .ratelimit import ConnectionBudget
from .rooms import RoomRegistry

class RelayConnection:
    """One websocket client: at most one room and one server-assigned identity."""

    def __init__(self, websocket: WebSocket, budget: ConnectionBudget):
        self.websocket = websocket
        self.budget = budget
        self.room_id: Optional[str] = None
        self.peer_id: Optional[str] = None
        self._send_lock = asyncio.Lock()

    async def send_json(self, msg: Dict[str, Any]):
        async with self._send_lock:
            await self.websocket.send_text(json_dumps(msg))

    async def send_bytes(self, data: bytes):
        async with self._send_lock:
            await self.websocket.send_bytes(data)

    async def close(self, code: int):
        async with self._send_lock:
            await self.websocket.close(code=code)

def build_relay_app(logger, settings: Optional[Settings] = None, store: Optional[ClaimStore] = None):
    settings = settings or get_settings()
    if store is None and settings.redis_url:
        store = RedisClaimStore(settings.redis_url, settings.redis_token)

    coordinator = RoomCoordinator(settings.machine_id, store, logger, ttl_s=settings.room_claim_ttl_s)
    registry = RoomRegistry(
        coordinator, logger,
        max_rooms=settings.max_rooms,
        max_peers_per_room=settings.max_peers_per_room,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        refresher = None
        if coordinator.store is not None:
            refresher = asyncio.create_task(coordinator.refresh_forever(registry.room_ids))
        logger.info("relay_started", machine=settings.machine_id, shared_store=coordinator.store is not None)
        try:
            yield
        finally:
            if refresher:
                refresher.cancel()
                try:
                    await refresher
                except asyncio.CancelledError:
                    pass
            await coordinator.close()

    app = FastAPI(title="Partake Relay", version=PROTO_VER, lifespan=lifespan)
    app.state.registry = registry
    app.state.coordinator = coordinator

    class HealthResp(BaseModel):
        status: str
        machine: str
        rooms: int

    async def _reject(conn: RelayConnection, code: str, message: str, close_code: int = 1008):
        try:
            await conn.send_json({"type": "error", "code": code, "message": message})
            await conn.close(close_code)
        except Exception as e:
            logger.debug("reject_send_failed", code=code, error=str(e))

    async def _redirect(conn: RelayConnection, owner: str):
        logger.info("client_redirected", machine=settings.machine_id, owner=owner)
        try:
            await conn.send_json({"type": "redirect", "instance": owner})
            await conn.close(REDIRECT_CLOSE_CODE)
        except Exception as e:
            logger.debug("redirect_send_failed", owner=owner, error=str(e))

    async def _join(conn: RelayConnection, msg: Dict[str, Any]) -> bool:
        if conn.peer_id:
            await conn.send_json({"type": "error", "code": ErrorCode.ALREADY_JOINED, "message": "Already joined"})
            return True

        room_id = msg.get("room")
        if not is_valid_room_id(room_id):
            await _reject(conn, ErrorCode.INVALID_ROOM, "Invalid room ID")
            return False

        try:
            peer_id = await registry.join(room_id, conn)
        except CapacityError as e:
            logger.warning("join_rejected", room=room_id, reason=str(e))
            await _reject(conn, e.code or ErrorCode.SERVER_FULL, str(e))
            return False
        except RoomRedirect as e:
            await _redirect(conn, e.owner)
            return False

        conn.room_id, conn.peer_id = room_id, peer_id
        await conn.send_json({"type": "peer-id", "peerId": peer_id})
        return True

    async def _on_text(conn: RelayConnection, raw: str) -> bool:
        if not conn.budget.allow_message():
            logger.warning("rate_limited", kind="message", peer=conn.peer_id)
            return True

        if len(raw) > settings.max_relay_message_bytes:
            logger.warning("message_too_large", peer=conn.peer_id, size=len(raw))
            if conn.room_id is None:
                await _reject(conn, ErrorCode.MESSAGE_TOO_LARGE, "Message too large")
                return False
            return True

        try:
            msg = fuzz_resistant_json_loads(raw, max_bytes=settings.max_relay_message_bytes)
        except ValueError as e:
            logger.warning("invalid_json", peer=conn.peer_id, error=str(e))
            return True

        msg_type = msg.get("type")
        if msg_type == "join":
            return await _join(conn, msg)

        if msg_type == "signal":
            target = msg.get("targetPeerId")
            if conn.peer_id and isinstance(target, str):
                await registry.forward_signal(conn.room_id, conn.peer_id, target, msg.get("signal"))
            return True

        logger.debug("unknown_message_type", type=msg_type)
        return True

    async def _on_binary(conn: RelayConnection, data: bytes):
        if len(data) > settings.max_relay_message_bytes:
            logger.warning("relay_too_large", peer=conn.peer_id, size=len(data))
            return

        if not conn.budget.allow_relay(len(data)):
            logger.warning("rate_limited", kind="relay", peer=conn.peer_id)
            return

        if not conn.peer_id or not data or data[0] != BINARY_RELAY:
            return

        try:
            target, payload = decode_relay(data)
        except ProtocolError as e:
            logger.warning("invalid_relay_frame", peer=conn.peer_id, error=str(e))
            return

        await registry.relay_binary(conn.room_id, conn.peer_id, target, payload)

    @app.get("/health", response_model=HealthResp)
    def health():
        return HealthResp(status="ok", machine=settings.machine_id, rooms=len(registry))

    @app.websocket("/ws")
    async def ws_relay(websocket: WebSocket):
        await websocket.accept()
        conn = RelayConnection(
            websocket,
            ConnectionBudget(settings.messages_per_minute, settings.relay_bytes_per_minute),
        )

        room_hint = websocket.query_params.get("room")
        if room_hint and not registry.has_room(room_hint):
            owner = await coordinator.owner_of(room_hint)
            if owner and owner != settings.machine_id:
                await _redirect(conn, owner)
                return

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    await _on_binary(conn, message["bytes"])
                elif message.get("text") is not None:
                    if not await _on_text(conn, message["text"]):
                        break
        except WebSocketDisconnect:
            pass
        finally:
            if conn.room_id and conn.peer_id:
                await registry.leave(conn.room_id, conn.peer_id)

    return app
