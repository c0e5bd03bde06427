from __future__ import annotations
import json
import math
import re
from typing import Any, Dict, Optional

from .constants import (
    CHUNK_SIZE, MAX_JSON_DEPTH, MAX_JSON_KEYS, MAX_FILE_LIST_BYTES,
    MAX_FILENAME_LENGTH, MAX_PATH_DEPTH, ROOM_ID_MAX_LENGTH, ROOM_ID_PATTERN,
)
from .encoding import b64d

_DRIVE_PREFIX = re.compile(r"^[a-zA-Z]:")
_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_RESERVED_NAMES = re.compile(r"^(con|prn|aux|nul|com[1-9]|lpt[1-9])$", re.IGNORECASE)

def validate_bytes_length(data: bytes, name: str, min_len: int, max_len: int = None):
    if len(data) < min_len:
        raise ValueError(f"{name} too short: {len(data)} < {min_len}")
    if max_len and len(data) > max_len:
        raise ValueError(f"{name} too long: {len(data)} > {max_len}")

def validate_base64(s: str, name: str, min_bytes: int, max_bytes: int = None) -> bytes:
    """Validate URL-safe base64 with strict decoding."""
    if not isinstance(s, str):
        raise ValueError(f"Invalid base64 for {name}: not a string")
    try:
        data = b64d(s)
        validate_bytes_length(data, name, min_bytes, max_bytes)
        return data
    except ValueError as e:
        raise ValueError(f"Invalid base64 for {name}: {e}")

def fuzz_resistant_json_loads(s: str, max_bytes: int = MAX_FILE_LIST_BYTES) -> Dict[str, Any]:
    if len(s) > max_bytes:
        raise ValueError("Message too large")

    def object_hook(obj):
        if len(obj) > MAX_JSON_KEYS:
            raise ValueError("Too many JSON keys")
        return obj

    parsed = json.loads(s, object_hook=object_hook)

    def check_depth(obj, depth=0):
        if depth > MAX_JSON_DEPTH:
            raise ValueError("JSON nesting too deep")
        if isinstance(obj, dict):
            for v in obj.values():
                check_depth(v, depth + 1)
        elif isinstance(obj, list):
            for v in obj:
                check_depth(v, depth + 1)

    check_depth(parsed)
    if not isinstance(parsed, dict):
        raise ValueError("Message must be JSON object")
    return parsed

def json_dumps(o: Any) -> str:
    return json.dumps(o, ensure_ascii=False, separators=(",", ":"))

# --- Rooms ---

def is_valid_room_id(room_id: Any) -> bool:
    if not room_id or not isinstance(room_id, str):
        return False
    if len(room_id) > ROOM_ID_MAX_LENGTH:
        return False
    return bool(ROOM_ID_PATTERN.match(room_id))

# --- Paths ---

def is_valid_path(path: Any) -> bool:
    """Reject parent segments, absolute and drive-letter forms."""
    if not path or not isinstance(path, str):
        return False
    if "\x00" in path:
        return False
    if path.startswith("/") or path.startswith("\\"):
        return False
    if _DRIVE_PREFIX.match(path):
        return False
    segments = re.split(r"[/\\]", path)
    if any(seg == ".." for seg in segments):
        return False
    return True

def sanitize_filename(name: Any) -> Optional[str]:
    if not name or not isinstance(name, str):
        return None

    sanitized = _UNSAFE_CHARS.sub("_", name)
    sanitized = re.sub(r"^\.+", "_", sanitized)
    sanitized = re.sub(r"\.+$", "", sanitized).strip()

    if not sanitized or len(sanitized) > MAX_FILENAME_LENGTH:
        return None

    if _RESERVED_NAMES.match(sanitized.split(".")[0]):
        return None

    return sanitized

def is_valid_upload_path(path: Any) -> bool:
    """Write-side rules: every segment must already be a clean filename."""
    if not is_valid_path(path):
        return False

    parts = path.split("/")
    if len(parts) > MAX_PATH_DEPTH:
        return False

    return all(sanitize_filename(part) == part for part in parts)

# --- Chunk accounting ---

def chunk_count(size: int) -> int:
    return max(1, math.ceil(size / CHUNK_SIZE))

def max_chunks_for(size: int) -> int:
    return math.ceil(size / CHUNK_SIZE) + 1
