import pytest

from partake.core.constants import CHUNK_SIZE
from partake.core.links import build_join_link, parse_join_link, signaling_url
from partake.core.crypto import generate_key
from partake.core.validation import (
    chunk_count, fuzz_resistant_json_loads, is_valid_path, is_valid_room_id,
    is_valid_upload_path, max_chunks_for, sanitize_filename,
)


@pytest.mark.parametrize("path", ["a.txt", "docs/report.pdf", "a/..b/c", "notes..txt", "deep/x/y/z.bin"])
def test_valid_paths(path):
    assert is_valid_path(path)


@pytest.mark.parametrize("path", [
    "", None, 42, "../etc/passwd", "a/../b", "a\\..\\b", "/abs", "\\share", "C:\\win", "c:rel", "a\x00b", "..",
])
def test_invalid_paths(path):
    assert not is_valid_path(path)


def test_sanitize_filename():
    assert sanitize_filename("report.pdf") == "report.pdf"
    assert sanitize_filename('a<b>:c.txt') == "a_b__c.txt"
    assert sanitize_filename("..hidden") == "_hidden"
    assert sanitize_filename("trailing...") == "trailing"
    assert sanitize_filename("CON") is None
    assert sanitize_filename("lpt1.txt") is None
    assert sanitize_filename("x" * 256) is None
    assert sanitize_filename("") is None


def test_upload_paths_follow_write_rules():
    assert is_valid_upload_path("photos/2024/cat.jpg")
    assert is_valid_upload_path("with space.txt")
    assert not is_valid_upload_path("a:b.txt")
    assert not is_valid_upload_path("aux/file.txt")
    assert not is_valid_upload_path("../escape.txt")
    assert not is_valid_upload_path("/".join(["d"] * 11))
    assert is_valid_upload_path("/".join(["d"] * 10))
    assert not is_valid_upload_path("dir//file.txt")


def test_room_ids():
    assert is_valid_room_id("abc_DEF-123")
    assert is_valid_room_id("a" * 32)
    assert not is_valid_room_id("a" * 33)
    assert not is_valid_room_id("bad room")
    assert not is_valid_room_id("")
    assert not is_valid_room_id(None)


def test_chunk_accounting():
    assert chunk_count(0) == 1
    assert chunk_count(1) == 1
    assert chunk_count(CHUNK_SIZE) == 1
    assert chunk_count(CHUNK_SIZE + 1) == 2
    assert max_chunks_for(0) == 1
    assert max_chunks_for(CHUNK_SIZE * 3) == 4


def test_json_loads_limits():
    assert fuzz_resistant_json_loads('{"a": 1}') == {"a": 1}
    with pytest.raises(ValueError):
        fuzz_resistant_json_loads("[1]")
    with pytest.raises(ValueError):
        fuzz_resistant_json_loads('{"a": 1}', max_bytes=4)
    deep = '{"a":' * 12 + "1" + "}" * 12
    with pytest.raises(ValueError):
        fuzz_resistant_json_loads(deep)
    wide = "{" + ",".join(f'"k{i}": {i}' for i in range(101)) + "}"
    with pytest.raises(ValueError):
        fuzz_resistant_json_loads(wide)


def test_join_link_round_trip():
    key = generate_key()
    link = build_join_link("https://share.example.com/", "room_1", key)
    assert link.startswith("https://share.example.com/#room_1:")
    assert parse_join_link(link) == ("room_1", key)
    assert parse_join_link("https://share.example.com/") is None
    with pytest.raises(ValueError):
        parse_join_link("https://share.example.com/#bad room:xyz")


def test_signaling_url():
    assert signaling_url("https://share.example.com/#r:k") == "wss://share.example.com/ws"
    assert signaling_url("http://localhost:3000") == "ws://localhost:3000/ws"
