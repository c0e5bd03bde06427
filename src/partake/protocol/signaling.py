from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from ..core.constants import (
    RELAY_WRITE_LIMIT, MAX_RELAY_MESSAGE_BYTES, MAX_REDIRECTS, INSTANCE_HEADER, JOIN_TIMEOUT_S, ErrorCode,
)
from ..core.errors import CapacityError, ProtocolError, ResourceTimeout, TransportFailure
from ..core.framing import decode_relay, encode_relay
from ..core.validation import fuzz_resistant_json_loads, json_dumps

@dataclass
class SignalEvent:
    kind: str  # peer-joined | peer-left | signal | relay | error | closed
    peer_id: Optional[str] = None
    signal: Any = None
    data: Optional[bytes] = None
    message: Optional[str] = None

class SignalingClient:
    """Websocket session with the relay: join, signal forwarding and binary relay."""

    def __init__(
        self,
        url: str,
        room_id: str,
        logger,
        instance_header: str = INSTANCE_HEADER,
        max_redirects: int = MAX_REDIRECTS,
    ):
        self.url = url
        self.room_id = room_id
        self.logger = logger
        self.instance_header = instance_header
        self.max_redirects = max_redirects

        self.ws = None
        self.peer_id: Optional[str] = None
        self.events: asyncio.Queue = asyncio.Queue()
        self._rx_task: Optional[asyncio.Task] = None

    async def connect(self) -> str:
        """Join the room, following owner redirects, and return our peer id."""
        instance = None
        for attempt in range(self.max_redirects + 1):
            headers = {self.instance_header: instance} if instance else None
            ws = await websockets.connect(
                f"{self.url}?room={self.room_id}",
                additional_headers=headers,
                write_limit=RELAY_WRITE_LIMIT,
                max_size=MAX_RELAY_MESSAGE_BYTES,
            )
            try:
                kind, value = await asyncio.wait_for(self._join(ws), JOIN_TIMEOUT_S)
            except asyncio.TimeoutError:
                await ws.close()
                raise ResourceTimeout("timed out waiting for the relay to accept join")
            except BaseException:
                await ws.close()
                raise

            if kind == "redirect":
                await ws.close()
                instance = value
                self.logger.info("signaling_redirect", room=self.room_id, instance=instance, attempt=attempt + 1)
                continue

            self.ws = ws
            self.peer_id = value
            self._rx_task = asyncio.create_task(self._recv_loop())
            self.logger.info("signaling_joined", room=self.room_id, peer=self.peer_id)
            return value

        raise ProtocolError(f"too many redirects joining room {self.room_id}")

    async def _join(self, ws) -> Tuple[str, str]:
        try:
            await ws.send(json_dumps({"type": "join", "room": self.room_id}))
        except ConnectionClosed:
            # A connect-time redirect may already be waiting to be read.
            pass

        while True:
            try:
                raw = await ws.recv()
            except ConnectionClosed as e:
                raise TransportFailure(f"relay closed the connection during join: {e}")
            if isinstance(raw, bytes):
                continue

            msg = self._parse(raw)
            if msg is None:
                continue

            msg_type = msg.get("type")
            if msg_type == "peer-id" and isinstance(msg.get("peerId"), str):
                return "joined", msg["peerId"]
            if msg_type == "redirect" and isinstance(msg.get("instance"), str):
                return "redirect", msg["instance"]
            if msg_type == "error":
                code = msg.get("code")
                text = msg.get("message", "join rejected")
                if code in (ErrorCode.ROOM_FULL, ErrorCode.SERVER_FULL):
                    raise CapacityError(text, code)
                raise ProtocolError(f"relay rejected join ({code}): {text}")
            self._dispatch(msg)

    def _parse(self, raw: str) -> Optional[Dict[str, Any]]:
        try:
            return fuzz_resistant_json_loads(raw, max_bytes=MAX_RELAY_MESSAGE_BYTES)
        except ValueError as e:
            self.logger.warning("signaling_invalid_json", error=str(e))
            return None

    def _dispatch(self, msg: Dict[str, Any]):
        msg_type = msg.get("type")
        if msg_type in ("peer-joined", "peer-left"):
            self.events.put_nowait(SignalEvent(msg_type, peer_id=msg.get("peerId")))
        elif msg_type == "signal":
            self.events.put_nowait(SignalEvent("signal", peer_id=msg.get("fromPeerId"), signal=msg.get("signal")))
        elif msg_type == "error":
            self.logger.warning("relay_error", code=msg.get("code"), message=msg.get("message"))
            self.events.put_nowait(SignalEvent("error", message=msg.get("message")))
        else:
            self.logger.debug("signaling_unknown_message", type=msg_type)

    async def _recv_loop(self):
        try:
            async for raw in self.ws:
                if isinstance(raw, bytes):
                    try:
                        from_peer, payload = decode_relay(raw)
                    except ProtocolError as e:
                        self.logger.warning("invalid_relay_frame", error=str(e))
                        continue
                    self.events.put_nowait(SignalEvent("relay", peer_id=from_peer, data=payload))
                    continue

                msg = self._parse(raw)
                if msg is not None:
                    self._dispatch(msg)
        except ConnectionClosed as e:
            self.logger.warning("signaling_connection_lost", room=self.room_id, error=str(e))
        finally:
            self.events.put_nowait(SignalEvent("closed"))

    async def send(self, msg: Dict[str, Any]):
        if self.ws is None:
            raise TransportFailure("signaling not connected")
        try:
            await self.ws.send(json_dumps(msg))
        except ConnectionClosed as e:
            raise TransportFailure(f"signaling connection closed: {e}")

    async def send_signal(self, target_peer_id: str, signal: Any):
        await self.send({"type": "signal", "targetPeerId": target_peer_id, "signal": signal})

    async def send_relay(self, target_peer_id: str, data: bytes):
        """Send a relay envelope; suspends while the socket's write buffer is over its limit."""
        if self.ws is None:
            raise TransportFailure("signaling not connected")
        try:
            await self.ws.send(encode_relay(target_peer_id, data))
        except ConnectionClosed as e:
            raise TransportFailure(f"signaling connection closed: {e}")

    async def close(self):
        if self._rx_task:
            self._rx_task.cancel()
            try:
                await self._rx_task
            except asyncio.CancelledError:
                pass
            self._rx_task = None

        if self.ws:
            await self.ws.close()
            self.ws = None
