"""Direct peer channel used by the transport when connectivity allows it.

A link reports everything through its ``events`` queue so the transport can
consume it on a single task. ``RTCDirectLink`` is the aiortc data channel;
tests substitute in-memory links with the same surface.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.constants import BUFFER_LOW, ICE_SERVERS

SignalSender = Callable[[Dict[str, Any]], Awaitable[None]]

@dataclass
class LinkEvent:
    kind: str  # open | close | error | message | drain
    data: Optional[bytes] = None
    error: Optional[str] = None

class DirectLink:
    def __init__(self):
        self.events: asyncio.Queue = asyncio.Queue()

    @property
    def buffered_amount(self) -> int:
        return 0

    @property
    def is_open(self) -> bool:
        return False

    async def start(self):
        raise NotImplementedError

    async def handle_signal(self, signal: Dict[str, Any]):
        raise NotImplementedError

    async def send(self, data: bytes):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    def _emit(self, kind: str, data: Optional[bytes] = None, error: Optional[str] = None):
        self.events.put_nowait(LinkEvent(kind, data, error))

def require_rtc():
    try:
        import aiortc
        return aiortc
    except ImportError as e:
        raise RuntimeError("Missing dependency 'aiortc'") from e

class RTCDirectLink(DirectLink):
    """WebRTC data channel negotiated over the signaling connection.

    aiortc gathers candidates before ``setLocalDescription`` returns, so the
    description we send already carries them; trickled candidates from the
    other side are still accepted.
    """

    def __init__(self, initiator: bool, send_signal: SignalSender, logger, ice_servers: List[str] = None):
        super().__init__()
        aiortc = require_rtc()
        self.initiator = initiator
        self.send_signal = send_signal
        self.logger = logger

        ice = [aiortc.RTCIceServer(urls=url) for url in (ice_servers or ICE_SERVERS)]
        self.pc = aiortc.RTCPeerConnection(aiortc.RTCConfiguration(iceServers=ice))
        self.channel = None
        self._closed = False

        @self.pc.on("connectionstatechange")
        async def on_state():
            self._on_connection_state(self.pc.connectionState)

        @self.pc.on("datachannel")
        def on_datachannel(channel):
            if self.channel is None:
                self._attach(channel)

    def _on_connection_state(self, state: str):
        self.logger.debug("rtc_connection_state", state=state)
        if state in ("failed", "disconnected"):
            self._emit("error", error=f"connection {state}")

    def _attach(self, channel):
        self.channel = channel
        channel.bufferedAmountLowThreshold = BUFFER_LOW

        @channel.on("open")
        def on_open():
            self._emit("open")

        @channel.on("close")
        def on_close():
            self._emit("close")

        @channel.on("bufferedamountlow")
        def on_low():
            self._emit("drain")

        @channel.on("message")
        def on_message(message):
            if isinstance(message, str):
                message = message.encode("utf-8")
            self._emit("message", data=message)

        # The answerer receives a channel that may already be open.
        if channel.readyState == "open":
            self._emit("open")

    @property
    def buffered_amount(self) -> int:
        return self.channel.bufferedAmount if self.channel else 0

    @property
    def is_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    async def start(self):
        if not self.initiator:
            return
        self._attach(self.pc.createDataChannel("data", ordered=True))
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        await self._send_description()

    async def _send_description(self):
        desc = self.pc.localDescription
        await self.send_signal({"sdp": {"type": desc.type, "sdp": desc.sdp}})

    async def handle_signal(self, signal: Dict[str, Any]):
        from aiortc import RTCSessionDescription
        from aiortc.sdp import candidate_from_sdp

        if not isinstance(signal, dict):
            raise ValueError("signal must be an object")

        sdp = signal.get("sdp")
        if sdp:
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp["sdp"], type=sdp["type"]))
            if sdp["type"] == "offer":
                answer = await self.pc.createAnswer()
                await self.pc.setLocalDescription(answer)
                await self._send_description()
            return

        cand = signal.get("candidate")
        if cand and cand.get("candidate"):
            line = cand["candidate"]
            if line.startswith("candidate:"):
                line = line[len("candidate:"):]
            candidate = candidate_from_sdp(line)
            candidate.sdpMid = cand.get("sdpMid")
            candidate.sdpMLineIndex = cand.get("sdpMLineIndex")
            await self.pc.addIceCandidate(candidate)

    async def send(self, data: bytes):
        if not self.is_open:
            raise ConnectionError("data channel is not open")
        self.channel.send(data)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self.channel is not None:
            self.channel.close()
        await self.pc.close()

def rtc_link_factory(logger, ice_servers: List[str] = None):
    """Build the link factory ShareClient uses to open a data channel per remote peer."""

    def factory(local_id: str, remote_id: str, initiator: bool, send_signal: SignalSender) -> DirectLink:
        logger.debug("direct_link_created", local=local_id, remote=remote_id, initiator=initiator)
        return RTCDirectLink(initiator, send_signal, logger, ice_servers=ice_servers)

    return factory
