"""Binary frame layouts carried inside each encrypted transport message.

JSON            type(1) | utf-8 json
FILE_CHUNK      type(1) | index(u32 LE) | total(u32 LE) | path_len(u16 LE) | path | data
UPLOAD_CHUNK    same layout as FILE_CHUNK
JSON_CHUNK      type(1) | message_id(u32 LE) | index(u32 LE) | total(u32 LE) | fragment

The relay envelope used on the signaling websocket is big-endian:

RELAY           type(1) | peer_id_len(u16 BE) | peer_id | payload
"""
from __future__ import annotations
import math
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .constants import MsgType, MSG_TYPES, MAX_JSON_SIZE, MAX_FILE_LIST_BYTES, JSON_CHUNK_TTL_S, BINARY_RELAY
from .errors import ProtocolError
from .timeutil import now
from .validation import fuzz_resistant_json_loads, json_dumps

_CHUNK_HEADER = struct.Struct("<BIIH")
_JSON_CHUNK_HEADER = struct.Struct("<BIII")
_RELAY_HEADER = struct.Struct(">BH")

MAX_JSON_CHUNKS = math.ceil(MAX_FILE_LIST_BYTES / MAX_JSON_SIZE)

@dataclass
class ChunkFrame:
    kind: int
    path: str
    index: int
    total: int
    data: bytes

@dataclass
class JsonChunkFrame:
    message_id: int
    index: int
    total: int
    data: bytes

Frame = Union[Dict[str, Any], ChunkFrame, JsonChunkFrame]

# --- Encoding ---

def encode_json(msg: Dict[str, Any], message_id: int) -> List[bytes]:
    """Serialize msg into one JSON frame, or JSON_CHUNK frames when it exceeds the ceiling."""
    body = json_dumps(msg).encode("utf-8")
    if len(body) <= MAX_JSON_SIZE:
        return [bytes([MsgType.JSON]) + body]

    total = math.ceil(len(body) / MAX_JSON_SIZE)
    frames = []
    for i in range(total):
        fragment = body[i * MAX_JSON_SIZE:(i + 1) * MAX_JSON_SIZE]
        frames.append(_JSON_CHUNK_HEADER.pack(MsgType.JSON_CHUNK, message_id, i, total) + fragment)
    return frames

def encode_chunk(kind: int, path: str, index: int, total: int, data: bytes) -> bytes:
    if kind not in (MsgType.FILE_CHUNK, MsgType.UPLOAD_CHUNK):
        raise ValueError(f"not a chunk frame type: {kind}")
    path_bytes = path.encode("utf-8")
    if len(path_bytes) > 0xFFFF:
        raise ValueError("path too long for chunk header")
    return _CHUNK_HEADER.pack(kind, index, total, len(path_bytes)) + path_bytes + data

# --- Decoding ---

def _parse_json(body: bytes) -> Dict[str, Any]:
    try:
        return fuzz_resistant_json_loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"invalid json frame: {e}")

def decode_frame(data: bytes) -> Frame:
    if not data:
        raise ProtocolError("empty frame")

    kind = data[0]
    if kind not in MSG_TYPES:
        raise ProtocolError(f"unknown frame type: {kind}")

    if kind == MsgType.JSON:
        return _parse_json(data[1:])

    if kind == MsgType.JSON_CHUNK:
        if len(data) < _JSON_CHUNK_HEADER.size:
            raise ProtocolError("truncated json chunk header")
        _, message_id, index, total = _JSON_CHUNK_HEADER.unpack_from(data)
        if total == 0 or index >= total:
            raise ProtocolError(f"json chunk index {index} outside total {total}")
        if total > MAX_JSON_CHUNKS:
            raise ProtocolError(f"json chunk total too large: {total}")
        return JsonChunkFrame(message_id, index, total, data[_JSON_CHUNK_HEADER.size:])

    if len(data) < _CHUNK_HEADER.size:
        raise ProtocolError("truncated chunk header")
    _, index, total, path_len = _CHUNK_HEADER.unpack_from(data)
    if total == 0 or index >= total:
        raise ProtocolError(f"chunk index {index} outside total {total}")
    end = _CHUNK_HEADER.size + path_len
    if end > len(data):
        raise ProtocolError("chunk path exceeds frame")
    try:
        path = data[_CHUNK_HEADER.size:end].decode("utf-8")
    except UnicodeDecodeError:
        raise ProtocolError("chunk path is not utf-8")
    return ChunkFrame(kind, path, index, total, data[end:])

# --- Relay envelope ---

def encode_relay(peer_id: str, payload: bytes) -> bytes:
    peer_bytes = peer_id.encode("utf-8")
    return _RELAY_HEADER.pack(BINARY_RELAY, len(peer_bytes)) + peer_bytes + payload

def decode_relay(data: bytes) -> Tuple[str, bytes]:
    if len(data) < _RELAY_HEADER.size:
        raise ProtocolError("truncated relay header")
    kind, id_len = _RELAY_HEADER.unpack_from(data)
    if kind != BINARY_RELAY:
        raise ProtocolError(f"unknown relay type: {kind}")
    end = _RELAY_HEADER.size + id_len
    if end > len(data):
        raise ProtocolError("relay peer id exceeds frame")
    try:
        peer_id = data[_RELAY_HEADER.size:end].decode("utf-8")
    except UnicodeDecodeError:
        raise ProtocolError("relay peer id is not utf-8")
    return peer_id, data[end:]

# --- JSON chunk reassembly ---

@dataclass
class _Pending:
    total: int
    created_at: float
    chunks: Dict[int, bytes] = field(default_factory=dict)

class JsonChunkAssembler:
    """Buffers JSON_CHUNK fragments by message id until every index has arrived."""

    def __init__(self, ttl_s: float = JSON_CHUNK_TTL_S, clock: Callable[[], float] = now):
        self.ttl_s = ttl_s
        self.clock = clock
        self._buffers: Dict[int, _Pending] = {}

    def __len__(self) -> int:
        return len(self._buffers)

    def add(self, frame: JsonChunkFrame) -> Optional[Dict[str, Any]]:
        self.expire()

        pending = self._buffers.get(frame.message_id)
        if pending is None:
            pending = _Pending(total=frame.total, created_at=self.clock())
            self._buffers[frame.message_id] = pending
        elif pending.total != frame.total:
            raise ProtocolError(
                f"json chunk total changed for message {frame.message_id}: {pending.total} -> {frame.total}"
            )

        if frame.index in pending.chunks:
            return None
        pending.chunks[frame.index] = frame.data

        if len(pending.chunks) < pending.total:
            return None

        del self._buffers[frame.message_id]
        body = b"".join(pending.chunks[i] for i in range(pending.total))
        return _parse_json(body)

    def expire(self) -> int:
        t = self.clock()
        stale = [mid for mid, p in self._buffers.items() if t - p.created_at >= self.ttl_s]
        for mid in stale:
            del self._buffers[mid]
        return len(stale)

    def clear(self):
        self._buffers.clear()
