"""Receiver-side transfer records.

``PendingDownload`` collects FILE_CHUNK frames for a file this side asked
for. ``UploadReceiver`` gates and collects uploads pushed to the host. Both
keep chunks in a sparse map so a retransmitted index never overwrites data
that already arrived.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..core.constants import MAX_FILE_SIZE, UPLOAD_TIMEOUT_S, UPLOAD_RATE_LIMIT, TRANSFER_NONCE_BYTES, TAG_BYTES
from ..core.crypto import derive_transfer_key, verify_tag
from ..core.errors import IntegrityError, ProtocolError
from ..core.files import format_size
from ..core.framing import ChunkFrame
from ..core.ratelimit import RateLimiter
from ..core.timeutil import now
from ..core.validation import is_valid_upload_path, max_chunks_for, validate_base64

WriteFile = Callable[[str, bytes], Awaitable[None]]

def _assemble(chunks: Dict[int, bytes], total: int) -> bytes:
    return b"".join(chunks[i] for i in range(total))

def _decode_integrity(msg: Dict[str, Any]) -> Optional[Tuple[bytes, bytes]]:
    nonce, tag = msg.get("nonce"), msg.get("hmac")
    if not isinstance(nonce, str) or not isinstance(tag, str) or not nonce or not tag:
        return None
    return (
        validate_base64(nonce, "nonce", TRANSFER_NONCE_BYTES, TRANSFER_NONCE_BYTES),
        validate_base64(tag, "hmac", TAG_BYTES, TAG_BYTES),
    )

class PendingDownload:
    def __init__(self, path: str):
        self.path = path
        self.chunks: Dict[int, bytes] = {}
        self.total: Optional[int] = None
        self.received = 0
        self.completion: Optional[Dict[str, Any]] = None
        self.last_activity = now()
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def complete(self) -> bool:
        return self.total is not None and self.received == self.total

    def add_chunk(self, frame: ChunkFrame) -> bool:
        """Store a chunk; returns False for a duplicate index."""
        if self.total is None:
            if frame.total > max_chunks_for(MAX_FILE_SIZE):
                raise ProtocolError(f"chunk count {frame.total} exceeds the file size limit")
            self.total = frame.total
        elif frame.total != self.total:
            raise ProtocolError(f"chunk total changed for {self.path}: {self.total} -> {frame.total}")

        if frame.index in self.chunks:
            return False
        self.chunks[frame.index] = frame.data
        self.received += 1
        self.last_activity = now()
        return True

    def verify(self, session_key: bytes, completion: Dict[str, Any]) -> bytes:
        """Assemble the file and check it against the sender's tag."""
        if not self.complete:
            raise ProtocolError(f"incomplete download: {self.received}/{self.total}")
        try:
            integrity = _decode_integrity(completion)
        except ValueError as e:
            raise IntegrityError(f"malformed integrity fields: {e}")
        if integrity is None:
            raise IntegrityError("missing integrity tag")

        data = _assemble(self.chunks, self.total)
        size = completion.get("size")
        if size is not None and size != len(data):
            raise IntegrityError(f"size mismatch: declared {size}, assembled {len(data)}")

        nonce, tag = integrity
        if not verify_tag(derive_transfer_key(session_key, nonce), data, tag):
            raise IntegrityError("integrity check failed")
        return data

    def resolve(self, data: bytes):
        if not self.future.done():
            self.future.set_result(data)

    def fail(self, exc: BaseException):
        if not self.future.done():
            self.future.set_exception(exc)

@dataclass
class UploadRecord:
    peer_id: str
    path: str
    size: int
    total: int
    upload_id: Optional[str] = None
    chunks: Dict[int, bytes] = field(default_factory=dict)
    received: int = 0
    bytes_received: int = 0
    timer: Optional[asyncio.Task] = None

    def cancel_timer(self):
        if self.timer is not None and self.timer is not asyncio.current_task():
            self.timer.cancel()
        self.timer = None

class UploadReceiver:
    """Host side of uploads, keyed by (peer id, path)."""

    def __init__(
        self,
        session_key: bytes,
        write_file: Optional[WriteFile],
        logger,
        allow_write: bool = False,
        timeout_s: float = UPLOAD_TIMEOUT_S,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.session_key = session_key
        self.write_file = write_file
        self.logger = logger
        self.allow_write = allow_write
        self.timeout_s = timeout_s
        self.rate_limiter = rate_limiter or RateLimiter(UPLOAD_RATE_LIMIT)
        self.uploads: Dict[Tuple[str, str], UploadRecord] = {}

    def __len__(self) -> int:
        return len(self.uploads)

    @staticmethod
    def response(path: Any, success: bool, message: str, upload_id: Any = None) -> Dict[str, Any]:
        return {"type": "upload-response", "path": path, "success": success, "message": message, "uploadId": upload_id}

    def _reject(self, peer_id: str, msg: Dict[str, Any], message: str) -> Dict[str, Any]:
        self.logger.warning("upload_rejected", peer=peer_id, path=msg.get("path"), reason=message)
        return self.response(msg.get("path"), False, message, msg.get("uploadId"))

    def _arm_timer(self, record: UploadRecord):
        record.cancel_timer()
        record.timer = asyncio.create_task(self._expire(record))

    async def _expire(self, record: UploadRecord):
        await asyncio.sleep(self.timeout_s)
        key = (record.peer_id, record.path)
        if self.uploads.get(key) is record:
            del self.uploads[key]
            record.timer = None
            self.logger.info("upload_expired", peer=record.peer_id, path=record.path, received=record.received)

    def _discard(self, key: Tuple[str, str]) -> Optional[UploadRecord]:
        record = self.uploads.pop(key, None)
        if record is not None:
            record.cancel_timer()
        return record

    def start(self, peer_id: str, msg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Accept an upload-start; returns a rejection response, or None when accepted."""
        if not self.allow_write:
            return self._reject(peer_id, msg, "Write access disabled")
        if not self.rate_limiter.is_allowed(peer_id):
            return self._reject(peer_id, msg, "Rate limit exceeded")

        path = msg.get("path")
        if not is_valid_upload_path(path):
            return self._reject(peer_id, msg, "Invalid file path")

        size = msg.get("size")
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            return self._reject(peer_id, msg, "Invalid file size")
        if size > MAX_FILE_SIZE:
            return self._reject(peer_id, msg, f"File too large (max {format_size(MAX_FILE_SIZE)})")

        total = msg.get("totalChunks")
        if not isinstance(total, int) or isinstance(total, bool) or total < 1 or total > max_chunks_for(size):
            return self._reject(peer_id, msg, "Invalid chunk count")

        key = (peer_id, path)
        if self._discard(key) is not None:
            self.logger.info("upload_restarted", peer=peer_id, path=path)

        record = UploadRecord(peer_id=peer_id, path=path, size=size, total=total, upload_id=msg.get("uploadId"))
        self.uploads[key] = record
        self._arm_timer(record)
        self.logger.info("upload_started", peer=peer_id, path=path, size=size, chunks=total)
        return None

    def chunk(self, peer_id: str, frame: ChunkFrame) -> Optional[Dict[str, Any]]:
        """Store an UPLOAD_CHUNK; returns a response only when the upload is aborted."""
        key = (peer_id, frame.path)
        record = self.uploads.get(key)
        if record is None:
            self.logger.debug("upload_chunk_unknown", peer=peer_id, path=frame.path)
            return None

        if frame.index >= record.total:
            self.logger.warning("upload_chunk_out_of_bounds", peer=peer_id, path=frame.path, index=frame.index)
            return None
        if frame.index in record.chunks:
            self.logger.warning("upload_chunk_duplicate", peer=peer_id, path=frame.path, index=frame.index)
            return None

        if record.bytes_received + len(frame.data) > record.size:
            self._discard(key)
            self.logger.warning("upload_size_exceeded", peer=peer_id, path=frame.path, declared=record.size)
            return self.response(frame.path, False, "Upload size exceeded", record.upload_id)

        record.chunks[frame.index] = frame.data
        record.received += 1
        record.bytes_received += len(frame.data)
        self._arm_timer(record)
        return None

    async def complete(self, peer_id: str, msg: Dict[str, Any]) -> Dict[str, Any]:
        path = msg.get("path")
        record = self._discard((peer_id, path)) if isinstance(path, str) else None
        upload_id = record.upload_id if record and record.upload_id else msg.get("uploadId")

        if record is None or record.received != record.total:
            return self._reject(peer_id, msg, "Incomplete upload")

        data = _assemble(record.chunks, record.total)
        if len(data) != record.size:
            return self._reject(peer_id, msg, "Size mismatch")

        try:
            integrity = _decode_integrity(msg)
        except ValueError:
            return self._reject(peer_id, msg, "Integrity check failed")
        if integrity is None:
            return self._reject(peer_id, msg, "Missing integrity tag")

        nonce, tag = integrity
        if not verify_tag(derive_transfer_key(self.session_key, nonce), data, tag):
            return self._reject(peer_id, msg, "Integrity check failed")

        if self.write_file is None:
            return self._reject(peer_id, msg, "Write failed")
        try:
            await self.write_file(path, data)
        except (OSError, ProtocolError) as e:
            self.logger.error("upload_write_failed", peer=peer_id, path=path, error=str(e))
            return self.response(path, False, "Write failed", upload_id)

        self.logger.info("upload_complete", peer=peer_id, path=path, size=len(data))
        return self.response(path, True, "Upload complete", upload_id)

    def drop_peer(self, peer_id: str):
        for key in [k for k in self.uploads if k[0] == peer_id]:
            self._discard(key)
        self.rate_limiter.forget(peer_id)

    def clear(self):
        for key in list(self.uploads):
            self._discard(key)
