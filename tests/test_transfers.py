import asyncio

import pytest

from partake.core.constants import CHUNK_SIZE, MsgType
from partake.core.crypto import compute_tag, derive_transfer_key, generate_key, generate_nonce
from partake.core.encoding import b64e
from partake.core.errors import IntegrityError, ProtocolError
from partake.core.framing import ChunkFrame
from partake.core.ratelimit import RateLimiter
from partake.protocol.transfers import PendingDownload, UploadReceiver


def integrity(key, data, **extra):
    nonce = generate_nonce()
    tag = compute_tag(derive_transfer_key(key, nonce), data)
    return {"nonce": b64e(nonce), "hmac": b64e(tag), "size": len(data), **extra}


def split(path, data, kind=MsgType.FILE_CHUNK):
    chunks = [data[i:i + CHUNK_SIZE] for i in range(0, len(data), CHUNK_SIZE)] or [b""]
    return [ChunkFrame(kind, path, i, len(chunks), c) for i, c in enumerate(chunks)]


# --- Downloads ---

@pytest.mark.asyncio
async def test_download_assembles_out_of_order_and_verifies():
    key = generate_key()
    data = bytes(range(256)) * 600
    download = PendingDownload("a.bin")
    frames = split("a.bin", data)
    assert len(frames) == 3

    for frame in reversed(frames):
        assert download.add_chunk(frame)
    assert not download.add_chunk(frames[0])
    assert download.complete

    assert download.verify(key, integrity(key, data)) == data


@pytest.mark.asyncio
async def test_download_rejects_tampered_data():
    key = generate_key()
    download = PendingDownload("a.bin")
    download.add_chunk(ChunkFrame(MsgType.FILE_CHUNK, "a.bin", 0, 1, b"evil"))
    with pytest.raises(IntegrityError):
        download.verify(key, integrity(key, b"good"))


@pytest.mark.asyncio
async def test_download_rejects_tag_from_another_session():
    download = PendingDownload("a.bin")
    download.add_chunk(ChunkFrame(MsgType.FILE_CHUNK, "a.bin", 0, 1, b"data"))
    with pytest.raises(IntegrityError):
        download.verify(generate_key(), integrity(generate_key(), b"data"))


@pytest.mark.asyncio
async def test_download_requires_integrity_fields():
    key = generate_key()
    download = PendingDownload("a.bin")
    download.add_chunk(ChunkFrame(MsgType.FILE_CHUNK, "a.bin", 0, 1, b"data"))

    with pytest.raises(IntegrityError, match="missing"):
        download.verify(key, {"size": 4})
    with pytest.raises(IntegrityError, match="malformed"):
        download.verify(key, {"size": 4, "nonce": "short", "hmac": b64e(b"x" * 32)})


@pytest.mark.asyncio
async def test_download_size_mismatch():
    key = generate_key()
    download = PendingDownload("a.bin")
    download.add_chunk(ChunkFrame(MsgType.FILE_CHUNK, "a.bin", 0, 1, b"data"))
    with pytest.raises(IntegrityError, match="size mismatch"):
        download.verify(key, integrity(key, b"data", size=5))


@pytest.mark.asyncio
async def test_download_incomplete_or_inconsistent_total():
    key = generate_key()
    download = PendingDownload("a.bin")
    download.add_chunk(ChunkFrame(MsgType.FILE_CHUNK, "a.bin", 0, 2, b"da"))
    with pytest.raises(ProtocolError):
        download.verify(key, integrity(key, b"data"))
    with pytest.raises(ProtocolError):
        download.add_chunk(ChunkFrame(MsgType.FILE_CHUNK, "a.bin", 1, 3, b"ta"))


@pytest.mark.asyncio
async def test_download_rejects_absurd_chunk_count():
    download = PendingDownload("a.bin")
    with pytest.raises(ProtocolError):
        download.add_chunk(ChunkFrame(MsgType.FILE_CHUNK, "a.bin", 0, 0xFFFFFFFF, b""))


# --- Uploads ---

class Sink:
    def __init__(self, error=None):
        self.files = {}
        self.error = error

    async def __call__(self, path, data):
        if self.error:
            raise self.error
        self.files[path] = data


def make_receiver(logger, key, sink=None, **kwargs):
    kwargs.setdefault("allow_write", True)
    return UploadReceiver(key, sink if sink is not None else Sink(), logger, **kwargs)


def start_msg(path, data, upload_id="u1"):
    return {
        "type": "upload-start",
        "path": path,
        "size": len(data),
        "totalChunks": len(split(path, data)),
        "uploadId": upload_id,
    }


async def upload(receiver, key, path, data, peer="peer"):
    assert receiver.start(peer, start_msg(path, data)) is None
    for frame in split(path, data, MsgType.UPLOAD_CHUNK):
        assert receiver.chunk(peer, frame) is None
    return await receiver.complete(peer, integrity(key, data, type="upload-complete", path=path, uploadId="u1"))


@pytest.mark.asyncio
async def test_upload_accepted_and_written(logger):
    key = generate_key()
    sink = Sink()
    receiver = make_receiver(logger, key, sink)
    data = b"z" * (CHUNK_SIZE + 10)

    resp = await upload(receiver, key, "docs/new.txt", data)
    assert resp == {
        "type": "upload-response",
        "path": "docs/new.txt",
        "success": True,
        "message": "Upload complete",
        "uploadId": "u1",
    }
    assert sink.files["docs/new.txt"] == data
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_upload_start_checks_in_order(logger):
    key = generate_key()
    closed = make_receiver(logger, key, allow_write=False)
    assert closed.start("p", {"path": "../x"})["message"] == "Write access disabled"

    limited = make_receiver(logger, key, rate_limiter=RateLimiter(1))
    assert limited.start("p", start_msg("a.txt", b"a")) is None
    assert limited.start("p", {"path": "../x"})["message"] == "Rate limit exceeded"

    receiver = make_receiver(logger, key)
    cases = [
        ({"path": "../escape.txt", "size": 1, "totalChunks": 1}, "Invalid file path"),
        ({"path": "con.txt", "size": 1, "totalChunks": 1}, "Invalid file path"),
        ({"path": "a.txt", "size": -1, "totalChunks": 1}, "Invalid file size"),
        ({"path": "a.txt", "size": "1", "totalChunks": 1}, "Invalid file size"),
        ({"path": "a.txt", "size": 3 * 1024 ** 3, "totalChunks": 1}, "File too large (max 2.0 GB)"),
        ({"path": "a.txt", "size": 10, "totalChunks": 0}, "Invalid chunk count"),
        ({"path": "a.txt", "size": 10, "totalChunks": 5}, "Invalid chunk count"),
    ]
    for msg, expected in cases:
        resp = receiver.start("p", msg)
        assert resp["success"] is False
        assert resp["message"] == expected
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_upload_ignores_duplicate_and_stray_chunks(logger):
    key = generate_key()
    receiver = make_receiver(logger, key)
    data = b"abc"
    receiver.start("p", start_msg("a.txt", data))

    assert receiver.chunk("p", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 0, 1, data)) is None
    assert receiver.chunk("p", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 0, 1, b"xyz")) is None
    assert receiver.chunk("p", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 4, 5, b"")) is None
    assert receiver.chunk("other", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 0, 1, b"xyz")) is None

    record = receiver.uploads[("p", "a.txt")]
    assert record.chunks == {0: b"abc"}
    resp = await receiver.complete("p", integrity(key, data, path="a.txt"))
    assert resp["success"]


@pytest.mark.asyncio
async def test_upload_over_declared_size_is_aborted(logger):
    key = generate_key()
    receiver = make_receiver(logger, key)
    receiver.start("p", {"path": "a.txt", "size": 10, "totalChunks": 2, "uploadId": "u9"})
    resp = receiver.chunk("p", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 0, 2, b"x" * 20))
    assert resp["message"] == "Upload size exceeded"
    assert resp["uploadId"] == "u9"
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_upload_complete_failures(logger):
    key = generate_key()
    receiver = make_receiver(logger, key)

    resp = await receiver.complete("p", integrity(key, b"", path="never-started.txt"))
    assert resp["message"] == "Incomplete upload"

    receiver.start("p", {"path": "a.txt", "size": 6, "totalChunks": 2})
    receiver.chunk("p", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 0, 2, b"abc"))
    resp = await receiver.complete("p", integrity(key, b"abcdef", path="a.txt"))
    assert resp["message"] == "Incomplete upload"

    receiver.start("p", {"path": "a.txt", "size": 6, "totalChunks": 1})
    receiver.chunk("p", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 0, 1, b"abc"))
    resp = await receiver.complete("p", integrity(key, b"abc", path="a.txt"))
    assert resp["message"] == "Size mismatch"

    receiver.start("p", start_msg("a.txt", b"abc"))
    receiver.chunk("p", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 0, 1, b"abc"))
    resp = await receiver.complete("p", {"path": "a.txt"})
    assert resp["message"] == "Missing integrity tag"

    receiver.start("p", start_msg("a.txt", b"abc"))
    receiver.chunk("p", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 0, 1, b"abc"))
    resp = await receiver.complete("p", integrity(key, b"abd", path="a.txt"))
    assert resp["message"] == "Integrity check failed"


@pytest.mark.asyncio
async def test_upload_write_failure_is_reported(logger):
    key = generate_key()
    receiver = make_receiver(logger, key, Sink(error=OSError("disk full")))
    resp = await upload(receiver, key, "a.txt", b"abc")
    assert resp["success"] is False
    assert resp["message"] == "Write failed"


@pytest.mark.asyncio
async def test_restart_replaces_the_previous_record(logger):
    key = generate_key()
    receiver = make_receiver(logger, key)
    receiver.start("p", start_msg("a.txt", b"old data"))
    receiver.chunk("p", ChunkFrame(MsgType.UPLOAD_CHUNK, "a.txt", 0, 1, b"old data"))

    resp = await upload(receiver, key, "a.txt", b"new")
    assert resp["success"]
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_idle_upload_expires(logger):
    key = generate_key()
    receiver = make_receiver(logger, key, timeout_s=0.05)
    receiver.start("p", start_msg("a.txt", b"abc"))
    assert len(receiver) == 1
    await asyncio.sleep(0.15)
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_drop_peer_discards_only_that_peer(logger):
    key = generate_key()
    receiver = make_receiver(logger, key)
    receiver.start("p1", start_msg("a.txt", b"abc"))
    receiver.start("p2", start_msg("a.txt", b"abc"))
    receiver.drop_peer("p1")
    assert list(receiver.uploads) == [("p2", "a.txt")]
    receiver.clear()
    assert len(receiver) == 0
