import base64
import re

from .constants import MAX_B64_LENGTH

_URLSAFE_ALPHABET = re.compile(r"^[A-Za-z0-9_-]*$")

def b64e(b: bytes) -> str:
    """Encode bytes to URL-safe base64 with padding stripped."""
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")

def b64d(s: str) -> bytes:
    """Decode unpadded URL-safe base64, rejecting anything outside the alphabet."""
    if len(s) > MAX_B64_LENGTH:
        raise ValueError(f"Base64 too long: {len(s)} > {MAX_B64_LENGTH}")
    if not _URLSAFE_ALPHABET.match(s):
        raise ValueError("Base64 contains characters outside the URL-safe alphabet")
    if len(s) % 4 == 1:
        raise ValueError("Base64 has invalid length")
    padded = s + "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(padded)
