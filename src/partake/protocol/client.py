from __future__ import annotations

import asyncio
import os
import secrets
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Set

import aiofiles
import aiofiles.os

from ..core.constants import (
    CHUNK_SIZE, MAX_FILE_SIZE, MAX_FILES, DIRECT_TIMEOUT_S, DOWNLOAD_IDLE_TIMEOUT_S, FOLDER_WATCH_S,
    FOLDER_CONCURRENCY, DOWNLOAD_RATE_LIMIT, MsgType, FileErrorCode,
)
from ..core.crypto import derive_transfer_key, generate_nonce, new_tagger
from ..core.encoding import b64e
from ..core.errors import CapacityError, IntegrityError, ProtocolError, ResourceTimeout, TransportFailure
from ..core.files import LocalFolder, format_size
from ..core.framing import ChunkFrame
from ..core.ratelimit import RateLimiter
from ..core.timeutil import now
from ..core.validation import chunk_count, is_valid_path, is_valid_upload_path
from .link import DirectLink, SignalSender
from .signaling import SignalingClient
from .transfers import PendingDownload, UploadReceiver
from .transport import PeerTransport, TransportEvent

LinkFactory = Callable[[str, str, bool, SignalSender], DirectLink]

class ShareClient:
    """Host or peer side of a shared folder.

    With a folder the client hosts: it advertises the file list, serves file
    requests and accepts uploads when write access is on. Without one it is a
    peer that pulls files from, and pushes files to, the host.
    """

    def __init__(
        self,
        signaling: SignalingClient,
        session_key: bytes,
        logger,
        folder: Optional[LocalFolder] = None,
        sink: Optional[LocalFolder] = None,
        allow_write: bool = False,
        link_factory: Optional[LinkFactory] = None,
        fallback_timeout: float = DIRECT_TIMEOUT_S,
        watch_interval: float = FOLDER_WATCH_S,
        download_timeout: float = DOWNLOAD_IDLE_TIMEOUT_S,
    ):
        self.signaling = signaling
        self.session_key = session_key
        self.logger = logger
        self.folder = folder
        self.sink = sink
        self.is_host = folder is not None
        self.allow_write = allow_write
        self.link_factory = link_factory
        self.fallback_timeout = fallback_timeout
        self.watch_interval = watch_interval
        self.download_timeout = download_timeout

        self.peer_id: Optional[str] = None
        self.transports: Dict[str, PeerTransport] = {}
        self.files: List[Dict[str, Any]] = []

        # Peer side
        self.host_peer_id: Optional[str] = None
        self.host_ready = asyncio.Event()
        self.downloads: Dict[str, PendingDownload] = {}
        self.uploads: Dict[str, asyncio.Future] = {}

        # Host side
        self.download_limiter = RateLimiter(DOWNLOAD_RATE_LIMIT)
        self.receiver = UploadReceiver(
            session_key, folder.write_atomic if folder else None, logger, allow_write=allow_write,
        )
        self._file_limit_warned = False

        self._consumers: Dict[str, asyncio.Task] = {}
        self._tasks: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()
        self.closed = asyncio.Event()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def start(self) -> str:
        self.peer_id = await self.signaling.connect()
        if self.is_host:
            await self.refresh_files(broadcast=False)
            self._tasks.append(asyncio.create_task(self._watch_folder()))
        self._tasks.append(asyncio.create_task(self._signaling_loop()))
        self.logger.info("client_started", peer=self.peer_id, host=self.is_host)
        return self.peer_id

    async def close(self):
        for task in self._tasks + list(self._background):
            task.cancel()
        await asyncio.gather(*self._tasks, *self._background, return_exceptions=True)
        self._tasks.clear()

        for peer_id in list(self.transports):
            await self._remove_peer(peer_id)
        self.receiver.clear()
        self._fail_pending(TransportFailure("client closed"))
        await self.signaling.close()
        self.closed.set()

    # --- Signaling and peers ---

    async def _signaling_loop(self):
        while True:
            ev = await self.signaling.events.get()
            if ev.kind == "peer-joined" and ev.peer_id:
                await self._add_peer(ev.peer_id)
            elif ev.kind == "peer-left" and ev.peer_id:
                await self._remove_peer(ev.peer_id)
            elif ev.kind == "signal":
                transport = self.transports.get(ev.peer_id)
                if transport:
                    await transport.handle_signal(ev.signal)
            elif ev.kind == "relay":
                transport = self.transports.get(ev.peer_id)
                if transport:
                    transport.feed(ev.data)
            elif ev.kind == "error":
                self.logger.warning("signaling_error", message=ev.message)
            elif ev.kind == "closed":
                self.logger.warning("signaling_closed", peer=self.peer_id)
                for peer_id in list(self.transports):
                    await self._remove_peer(peer_id)
                self._fail_pending(TransportFailure("signaling connection lost"))
                self.closed.set()
                return

    def _make_link(self, remote_id: str) -> Optional[DirectLink]:
        if self.link_factory is None:
            return None

        async def send_signal(signal):
            await self.signaling.send_signal(remote_id, signal)

        try:
            return self.link_factory(self.peer_id, remote_id, self.is_host, send_signal)
        except RuntimeError as e:
            self.logger.warning("direct_link_unavailable", peer=remote_id, error=str(e))
            return None

    async def _add_peer(self, remote_id: str):
        if remote_id in self.transports:
            return
        transport = PeerTransport(
            remote_id, self.session_key, self.signaling, self.logger,
            link=self._make_link(remote_id), fallback_timeout=self.fallback_timeout,
        )
        self.transports[remote_id] = transport
        self._consumers[remote_id] = asyncio.create_task(self._consume(transport))
        self.logger.info("peer_added", peer=remote_id, peers=len(self.transports))
        await transport.start()

    async def _remove_peer(self, remote_id: str):
        transport = self.transports.pop(remote_id, None)
        if transport is None:
            return
        await transport.close()
        consumer = self._consumers.pop(remote_id, None)
        if consumer is not None:
            try:
                await asyncio.wait_for(consumer, timeout=1.0)
            except asyncio.TimeoutError:
                consumer.cancel()

        self.receiver.drop_peer(remote_id)
        self.download_limiter.forget(remote_id)
        self.logger.info("peer_removed", peer=remote_id, peers=len(self.transports))

        if remote_id == self.host_peer_id:
            self.host_peer_id = None
            self.host_ready.clear()
            self._fail_pending(TransportFailure("connection to host lost"))

    def _fail_pending(self, exc: Exception):
        for pending in list(self.downloads.values()):
            pending.fail(exc)
        for fut in list(self.uploads.values()):
            if not fut.done():
                fut.set_exception(exc)

    async def _consume(self, transport: PeerTransport):
        while True:
            ev: TransportEvent = await transport.events.get()
            if ev.kind == "opened":
                self.logger.info("peer_connected", peer=transport.peer_id, path=transport.path)
                if self.is_host:
                    self._spawn(self._send_file_list(transport))
            elif ev.kind == "state":
                self.logger.debug("transport_state", peer=transport.peer_id, state=ev.state.name)
            elif ev.kind == "message":
                try:
                    await self._on_message(transport, ev.message)
                except (ProtocolError, TypeError, ValueError) as e:
                    self.logger.warning("message_dropped", peer=transport.peer_id, error=str(e))
            elif ev.kind == "closed":
                return

    async def _reply(self, transport: PeerTransport, msg: Dict[str, Any]):
        try:
            await transport.send_json(msg)
        except TransportFailure as e:
            self.logger.warning("reply_failed", peer=transport.peer_id, type=msg.get("type"), error=str(e))

    async def _on_message(self, transport: PeerTransport, msg: Any):
        peer_id = transport.peer_id

        if isinstance(msg, ChunkFrame):
            if msg.kind == MsgType.FILE_CHUNK:
                self._on_file_chunk(msg)
            elif self.is_host:
                response = self.receiver.chunk(peer_id, msg)
                if response:
                    await self._reply(transport, response)
            return

        msg_type = msg.get("type")
        if msg_type == "file-list" and not self.is_host:
            self._on_file_list(peer_id, msg)
        elif msg_type == "file-request" and self.is_host:
            self._spawn(self._serve_file(transport, msg.get("path")))
        elif msg_type == "file-complete":
            self._on_file_complete(msg)
        elif msg_type == "file-error":
            self._on_file_error(msg)
        elif msg_type == "upload-start" and self.is_host:
            response = self.receiver.start(peer_id, msg)
            if response:
                await self._reply(transport, response)
        elif msg_type == "upload-complete" and self.is_host:
            response = await self.receiver.complete(peer_id, msg)
            await self._reply(transport, response)
            if response["success"]:
                await self.refresh_files()
        elif msg_type == "upload-response" and not self.is_host:
            upload_id = msg.get("uploadId")
            fut = self.uploads.get(upload_id) if isinstance(upload_id, str) else None
            if fut is not None and not fut.done():
                fut.set_result(msg)
        else:
            self.logger.debug("unhandled_message", peer=peer_id, type=msg_type)

    # --- Host: file list ---

    async def _scan(self) -> List[Dict[str, Any]]:
        entries = await asyncio.to_thread(self.folder.list_entries)
        if len(entries) > MAX_FILES and not self._file_limit_warned:
            self._file_limit_warned = True
            self.logger.warning("file_list_over_limit", files=len(entries), limit=MAX_FILES)
        return [e.to_wire() for e in entries]

    async def refresh_files(self, broadcast: bool = True):
        files = await self._scan()
        if files == self.files:
            return
        self.files = files
        self.logger.info("file_list_updated", files=len(files))
        if broadcast:
            self.broadcast_file_list()

    def broadcast_file_list(self):
        for transport in list(self.transports.values()):
            if transport.path is not None:
                self._spawn(self._send_file_list(transport))

    async def _send_file_list(self, transport: PeerTransport):
        await self._reply(transport, {"type": "file-list", "files": self.files, "allowWrite": self.allow_write})

    async def _watch_folder(self):
        while True:
            await asyncio.sleep(self.watch_interval)
            try:
                await self.refresh_files()
            except OSError as e:
                self.logger.warning("folder_scan_failed", error=str(e))

    def set_allow_write(self, allow: bool):
        self.allow_write = allow
        self.receiver.allow_write = allow
        self.logger.info("write_access_changed", allow_write=allow)
        self.broadcast_file_list()

    # --- Host: serving downloads ---

    async def _file_error(self, transport: PeerTransport, path: Any, code: str, message: str):
        self.logger.warning("file_request_rejected", peer=transport.peer_id, path=path, code=code)
        await self._reply(transport, {"type": "file-error", "path": path, "code": code, "message": message})

    async def _serve_file(self, transport: PeerTransport, path: Any):
        peer_id = transport.peer_id
        if not is_valid_path(path):
            return await self._file_error(transport, path, FileErrorCode.INVALID_PATH, "Invalid path")
        if not self.download_limiter.is_allowed(peer_id):
            return await self._file_error(transport, path, FileErrorCode.RATE_LIMITED, "Rate limit exceeded")

        try:
            size = await self.folder.size_of(path)
        except ProtocolError:
            return await self._file_error(transport, path, FileErrorCode.INVALID_PATH, "Invalid path")
        except OSError:
            return await self._file_error(transport, path, FileErrorCode.NOT_FOUND, "File not found")
        if size > MAX_FILE_SIZE:
            return await self._file_error(
                transport, path, FileErrorCode.TOO_LARGE, f"File too large (max {format_size(MAX_FILE_SIZE)})",
            )

        nonce = generate_nonce()
        tagger = new_tagger(derive_transfer_key(self.session_key, nonce))
        total = chunk_count(size)
        sent = 0
        try:
            async with self.folder.open_for_read(path) as handle:
                for i in range(total):
                    start = i * CHUNK_SIZE
                    data = await self.folder.read_range(handle, start, min(start + CHUNK_SIZE, size))
                    tagger.update(data)
                    await transport.send_chunk(MsgType.FILE_CHUNK, path, i, total, data)
                    sent += len(data)
                    await asyncio.sleep(0)
        except OSError as e:
            self.logger.error("file_read_failed", peer=peer_id, path=path, error=str(e))
            return await self._file_error(transport, path, FileErrorCode.READ_FAILED, "Read failed")
        except TransportFailure as e:
            self.logger.warning("file_send_aborted", peer=peer_id, path=path, error=str(e))
            return

        await self._reply(transport, {
            "type": "file-complete",
            "path": path,
            "name": PurePosixPath(path).name,
            "size": sent,
            "nonce": b64e(nonce),
            "hmac": b64e(tagger.digest()),
        })
        self.logger.info("file_sent", peer=peer_id, path=path, size=sent, chunks=total, via=transport.path)

    # --- Peer: receiving ---

    def _on_file_list(self, peer_id: str, msg: Dict[str, Any]):
        files = msg.get("files")
        if not isinstance(files, list):
            self.logger.warning("file_list_invalid", peer=peer_id)
            return
        if len(files) > MAX_FILES:
            self.logger.warning("file_list_too_large", peer=peer_id, files=len(files), limit=MAX_FILES)
            return

        self.files = [
            f for f in files
            if isinstance(f, dict) and is_valid_path(f.get("path")) and isinstance(f.get("size"), int)
        ]
        self.allow_write = bool(msg.get("allowWrite"))
        self.host_peer_id = peer_id
        self.host_ready.set()
        self.logger.info("file_list_received", peer=peer_id, files=len(self.files), allow_write=self.allow_write)

    def _on_file_chunk(self, frame: ChunkFrame):
        pending = self.downloads.get(frame.path)
        if pending is None:
            self.logger.debug("unexpected_chunk", path=frame.path, index=frame.index)
            return
        try:
            if not pending.add_chunk(frame):
                self.logger.debug("duplicate_chunk", path=frame.path, index=frame.index)
                return
        except ProtocolError as e:
            self.logger.warning("download_failed", path=frame.path, error=str(e))
            pending.fail(e)
            return

        if pending.complete and pending.completion is not None:
            self._finish_download(pending, pending.completion)

    def _pending_for(self, msg: Dict[str, Any]) -> Optional[PendingDownload]:
        path = msg.get("path")
        return self.downloads.get(path) if isinstance(path, str) else None

    def _on_file_complete(self, msg: Dict[str, Any]):
        pending = self._pending_for(msg)
        if pending is None:
            return
        if not pending.complete:
            # Chunks still in flight, e.g. right after a path switch.
            self.logger.debug("completion_deferred", path=pending.path, received=pending.received, total=pending.total)
            pending.completion = msg
            return
        self._finish_download(pending, msg)

    def _finish_download(self, pending: PendingDownload, completion: Dict[str, Any]):
        try:
            data = pending.verify(self.session_key, completion)
        except (IntegrityError, ProtocolError) as e:
            self.logger.warning("download_integrity_failed", path=pending.path, error=str(e))
            pending.fail(e)
            return
        pending.resolve(data)

    def _on_file_error(self, msg: Dict[str, Any]):
        pending = self._pending_for(msg)
        if pending is None:
            return
        code, text = msg.get("code"), msg.get("message", "request refused")
        if code in (FileErrorCode.RATE_LIMITED, FileErrorCode.TOO_LARGE):
            pending.fail(CapacityError(text, code))
        else:
            pending.fail(ProtocolError(f"{text} ({code})"))

    # --- Peer: requesting ---

    def _host_transport(self) -> PeerTransport:
        transport = self.transports.get(self.host_peer_id) if self.host_peer_id else None
        if transport is None or transport.is_closed:
            raise TransportFailure("not connected to a host")
        return transport

    async def wait_for_host(self, timeout: Optional[float] = None):
        try:
            await asyncio.wait_for(self.host_ready.wait(), timeout)
        except asyncio.TimeoutError:
            raise ResourceTimeout("no file list received from a host")

    def entry(self, path: str) -> Optional[Dict[str, Any]]:
        for f in self.files:
            if f.get("path") == path:
                return f
        return None

    async def _await_download(self, pending: PendingDownload) -> bytes:
        """Wait for the download, failing it once no chunk has arrived for download_timeout seconds."""
        while True:
            remaining = self.download_timeout - (now() - pending.last_activity)
            if remaining <= 0:
                self.logger.warning("download_stalled", path=pending.path, received=pending.received, total=pending.total)
                pending.fail(ResourceTimeout(f"download of {pending.path} stalled"))
                return await pending.future
            try:
                return await asyncio.wait_for(asyncio.shield(pending.future), remaining)
            except asyncio.TimeoutError:
                continue

    async def request_file(self, path: str) -> bytes:
        """Download one file from the host; writes it into the sink folder when one is set."""
        if not is_valid_path(path):
            raise ProtocolError(f"invalid path: {path!r}")
        entry = self.entry(path)
        if entry and entry.get("size", 0) > MAX_FILE_SIZE:
            raise CapacityError(f"File too large (max {format_size(MAX_FILE_SIZE)})", FileErrorCode.TOO_LARGE)

        existing = self.downloads.get(path)
        if existing is not None:
            return await asyncio.shield(existing.future)

        transport = self._host_transport()
        pending = PendingDownload(path)
        self.downloads[path] = pending
        try:
            await transport.send_json({"type": "file-request", "path": path})
            data = await self._await_download(pending)
        finally:
            if self.downloads.get(path) is pending:
                del self.downloads[path]

        if self.sink is not None:
            await self.sink.write_atomic(path, data)
        self.logger.info("file_downloaded", path=path, size=len(data), via=transport.path)
        return data

    async def download_folder(self, prefix: str) -> Dict[str, Optional[BaseException]]:
        """Download every listed file under prefix, at most three at a time.

        Returns each path mapped to None on success or to the exception it failed with.
        """
        prefix = prefix.strip("/")
        paths = [
            f["path"] for f in self.files
            if not prefix or f["path"] == prefix or f["path"].startswith(prefix + "/")
        ]
        if not paths:
            raise ProtocolError(f"no files found under {prefix!r}")

        sem = asyncio.Semaphore(FOLDER_CONCURRENCY)

        async def one(path: str):
            async with sem:
                await self.request_file(path)

        self.logger.info("folder_download_started", prefix=prefix, files=len(paths))
        results = await asyncio.gather(*(one(p) for p in paths), return_exceptions=True)
        outcome = {p: (r if isinstance(r, BaseException) else None) for p, r in zip(paths, results)}
        failed = sum(1 for r in outcome.values() if r is not None)
        self.logger.info("folder_download_finished", prefix=prefix, files=len(paths), failed=failed)
        return outcome

    async def upload_file(self, local_path: str, remote_path: Optional[str] = None) -> Dict[str, Any]:
        """Push a local file to the host and return its upload-response."""
        path = remote_path or os.path.basename(local_path)
        if not is_valid_upload_path(path):
            raise ProtocolError(f"invalid upload path: {path!r}")
        if not self.allow_write:
            raise ProtocolError("host does not accept uploads")

        size = (await aiofiles.os.stat(local_path)).st_size
        if size > MAX_FILE_SIZE:
            raise CapacityError(f"File too large (max {format_size(MAX_FILE_SIZE)})", FileErrorCode.TOO_LARGE)

        transport = self._host_transport()
        upload_id = secrets.token_hex(8)
        response: asyncio.Future = asyncio.get_running_loop().create_future()
        self.uploads[upload_id] = response

        total = chunk_count(size)
        nonce = generate_nonce()
        tagger = new_tagger(derive_transfer_key(self.session_key, nonce))
        try:
            await transport.send_json({
                "type": "upload-start", "path": path, "size": size, "totalChunks": total, "uploadId": upload_id,
            })
            async with aiofiles.open(local_path, "rb") as f:
                for i in range(total):
                    if response.done():
                        break
                    data = await f.read(CHUNK_SIZE)
                    tagger.update(data)
                    await transport.send_chunk(MsgType.UPLOAD_CHUNK, path, i, total, data)
                    await asyncio.sleep(0)

            if not response.done():
                await transport.send_json({
                    "type": "upload-complete", "path": path,
                    "nonce": b64e(nonce), "hmac": b64e(tagger.digest()), "uploadId": upload_id,
                })
            result = await response
        finally:
            self.uploads.pop(upload_id, None)

        self.logger.info("upload_finished", path=path, size=size, success=result.get("success"),
                         message=result.get("message"))
        return result
