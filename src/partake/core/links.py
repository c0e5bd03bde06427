from __future__ import annotations
from typing import Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from .crypto import import_key
from .encoding import b64e
from .validation import is_valid_room_id

def build_join_link(base_url: str, room_id: str, key: bytes) -> str:
    base = base_url.split("#", 1)[0].rstrip("/")
    return f"{base}/#{room_id}:{b64e(key)}"

def parse_join_link(url: str) -> Optional[Tuple[str, bytes]]:
    """Return (room_id, session_key) from the link fragment, or None for host mode."""
    fragment = urlsplit(url).fragment
    if not fragment or ":" not in fragment:
        return None

    room_id, key_b64 = fragment.split(":", 1)
    if not is_valid_room_id(room_id):
        raise ValueError("Invalid link: bad room id")
    return room_id, import_key(key_b64)

def signaling_url(url: str) -> str:
    parts = urlsplit(url)
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, "/ws", "", ""))
