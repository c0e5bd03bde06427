"""Encrypted per-peer transport over a direct link, or the relay when that fails.

Every outbound frame is sealed with the session key and goes out on exactly
one path. The transport starts negotiating a direct link and falls back to
the relay on timeout, link error or send failure; the switch is one-way.
Inbound frames from both paths share one ordered queue and one worker.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, List, Optional, Protocol

from ..core.constants import BUFFER_HIGH, DIRECT_TIMEOUT_S, DIRECT_VERIFY_S, JSON_CHUNK_SWEEP_S
from ..core.crypto import encrypt, decrypt
from ..core.errors import IntegrityError, ProtocolError, TransportFailure
from ..core.framing import JsonChunkAssembler, JsonChunkFrame, decode_frame, encode_chunk, encode_json
from .link import DirectLink
from .state import TransportState, SETTLED

class RelaySender(Protocol):
    async def send_relay(self, target_peer_id: str, data: bytes) -> None: ...

@dataclass
class TransportEvent:
    kind: str  # opened | message | state | closed
    state: Optional[TransportState] = None
    message: Any = None

class PeerTransport:
    def __init__(
        self,
        peer_id: str,
        session_key: bytes,
        relay: RelaySender,
        logger,
        link: Optional[DirectLink] = None,
        fallback_timeout: float = DIRECT_TIMEOUT_S,
        high_water: int = BUFFER_HIGH,
        verify_window: float = DIRECT_VERIFY_S,
    ):
        self.peer_id = peer_id
        self.session_key = session_key
        self.relay = relay
        self.logger = logger
        self.link = link
        self.fallback_timeout = fallback_timeout
        self.high_water = high_water
        self.verify_window = verify_window

        self.state = TransportState.NEGOTIATING
        self.events: asyncio.Queue = asyncio.Queue()

        self._rx: asyncio.Queue = asyncio.Queue()
        self._send_lock = asyncio.Lock()
        self._settled = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()
        self._closed = asyncio.Event()
        self._opened = False
        self._verified = False

        self._assembler = JsonChunkAssembler()
        self._message_id = 0
        self._tasks: List[asyncio.Task] = []
        self._fallback_task: Optional[asyncio.Task] = None

    @property
    def path(self) -> Optional[str]:
        if self.state == TransportState.DIRECT:
            return "direct"
        if self.state == TransportState.RELAY:
            return "relay"
        return None

    @property
    def is_closed(self) -> bool:
        return self.state == TransportState.CLOSED

    async def start(self):
        self._tasks.append(asyncio.create_task(self._rx_worker()))
        self._tasks.append(asyncio.create_task(self._sweep_loop()))

        if self.link is None:
            self._set_state(TransportState.RELAY)
            return

        self._tasks.append(asyncio.create_task(self._link_loop()))
        self._fallback_task = asyncio.create_task(self._fallback_timer())
        try:
            await self.link.start()
        except Exception as e:
            self.logger.warning("negotiation_failed", peer=self.peer_id, error=str(e))
            await self._switch_to_relay("negotiation_failed")

    # --- State ---

    def _set_state(self, state: TransportState):
        if self.state == state:
            return
        self.state = state
        if state in SETTLED:
            self._settled.set()
        self._drained.set()
        self.events.put_nowait(TransportEvent("state", state=state))
        if state in (TransportState.DIRECT, TransportState.RELAY) and not self._opened:
            self._opened = True
            self.events.put_nowait(TransportEvent("opened", state=state))

    def _cancel_fallback(self):
        task = self._fallback_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._fallback_task = None

    async def _switch_to_relay(self, reason: str):
        if self.state in (TransportState.RELAY, TransportState.CLOSED):
            return
        self._cancel_fallback()
        self.logger.info("transport_fallback", peer=self.peer_id, reason=reason, previous=self.state.name)
        self._set_state(TransportState.RELAY)
        await self._close_link()

    async def _close_link(self):
        if self.link is None:
            return
        try:
            await self.link.close()
        except Exception as e:
            self.logger.debug("link_close_failed", peer=self.peer_id, error=str(e))

    async def _fallback_timer(self):
        await asyncio.sleep(self.fallback_timeout)
        if self.state == TransportState.NEGOTIATING:
            await self._switch_to_relay("timeout")

    async def _link_loop(self):
        while True:
            ev = await self.link.events.get()
            if ev.kind == "message":
                if ev.data is not None:
                    self._rx.put_nowait(ev.data)
            elif ev.kind == "open":
                if self.state == TransportState.NEGOTIATING:
                    self._cancel_fallback()
                    self.logger.info("transport_direct", peer=self.peer_id)
                    self._set_state(TransportState.DIRECT)
            elif ev.kind == "drain":
                self._drained.set()
            elif ev.kind in ("close", "error"):
                if self.state in (TransportState.NEGOTIATING, TransportState.DIRECT):
                    await self._switch_to_relay(ev.error or f"link_{ev.kind}")

    async def handle_signal(self, signal: Any):
        if self.link is None or self.state in (TransportState.RELAY, TransportState.CLOSED):
            return
        try:
            await self.link.handle_signal(signal)
        except Exception as e:
            self.logger.warning("signal_failed", peer=self.peer_id, error=str(e))
            await self._switch_to_relay("negotiation_failed")

    # --- Send path ---

    async def _until_closed(self, aw: Awaitable):
        """Await aw unless the transport closes first, which raises TransportFailure."""
        task = asyncio.ensure_future(aw)
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({task, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        raise TransportFailure(f"transport to {self.peer_id} closed")

    async def _send_direct(self, payload: bytes) -> bool:
        while self.state == TransportState.DIRECT and self.link.buffered_amount > self.high_water:
            self._drained.clear()
            self.logger.debug("send_backpressure", peer=self.peer_id, buffered=self.link.buffered_amount)
            await self._until_closed(self._drained.wait())

        if self.state != TransportState.DIRECT:
            return False

        try:
            await self.link.send(payload)
        except Exception as e:
            self.logger.warning("direct_send_failed", peer=self.peer_id, error=str(e))
            await self._switch_to_relay("send_error")
            return False

        if self._verified:
            return True
        # Until one frame has survived on the link, hold it briefly and resend
        # it over the relay if the link drops in that window.
        await asyncio.sleep(self.verify_window)
        if self.state == TransportState.DIRECT and self.link.is_open:
            self._verified = True
            return True
        if self.state != TransportState.CLOSED:
            await self._switch_to_relay("unverified")
        return False

    async def _send_one(self, frame: bytes):
        if self.state == TransportState.NEGOTIATING:
            await self._until_closed(self._settled.wait())
        if self.state == TransportState.CLOSED:
            raise TransportFailure(f"transport to {self.peer_id} closed")

        payload = encrypt(self.session_key, frame)
        if self.state == TransportState.DIRECT and await self._send_direct(payload):
            return
        if self.state == TransportState.CLOSED:
            raise TransportFailure(f"transport to {self.peer_id} closed")
        await self._until_closed(self.relay.send_relay(self.peer_id, payload))

    async def _send_frames(self, frames: List[bytes]):
        async with self._send_lock:
            for frame in frames:
                await self._send_one(frame)

    async def send_json(self, msg: dict):
        self._message_id = (self._message_id + 1) & 0xFFFFFFFF
        await self._send_frames(encode_json(msg, self._message_id))

    async def send_chunk(self, kind: int, path: str, index: int, total: int, data: bytes):
        await self._send_frames([encode_chunk(kind, path, index, total, data)])

    # --- Receive path ---

    def feed(self, data: bytes):
        """Queue a frame that arrived over the relay."""
        if self.state != TransportState.CLOSED:
            self._rx.put_nowait(data)

    async def _rx_worker(self):
        while True:
            data = await self._rx.get()
            try:
                frame = decode_frame(decrypt(self.session_key, data))
                if isinstance(frame, JsonChunkFrame):
                    frame = self._assembler.add(frame)
                    if frame is None:
                        continue
            except (IntegrityError, ProtocolError) as e:
                self.logger.warning("frame_dropped", peer=self.peer_id, error=str(e))
                continue
            self.events.put_nowait(TransportEvent("message", message=frame))

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(JSON_CHUNK_SWEEP_S)
            expired = self._assembler.expire()
            if expired:
                self.logger.debug("json_chunks_expired", peer=self.peer_id, count=expired)

    # --- Teardown ---

    async def close(self):
        if self.state == TransportState.CLOSED:
            return
        self._cancel_fallback()
        self._set_state(TransportState.CLOSED)
        self._closed.set()

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        self._assembler.clear()
        await self._close_link()
        self.events.put_nowait(TransportEvent("closed", state=TransportState.CLOSED))
        self.logger.info("transport_closed", peer=self.peer_id)
