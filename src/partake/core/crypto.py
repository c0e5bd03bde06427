from __future__ import annotations
import hashlib
import hmac
import secrets

from .constants import (
    KEY_BYTES, AEAD_NONCE_BYTES, AEAD_TAG_BYTES, TRANSFER_NONCE_BYTES, TAG_BYTES, HMAC_INFO,
)
from .encoding import b64e
from .errors import IntegrityError
from .validation import validate_base64

def hmac_sha256(k: bytes, b: bytes) -> bytes:
    return hmac.new(k, b, hashlib.sha256).digest()

def hkdf_sha256(ikm: bytes, salt: bytes, info: bytes, n: int) -> bytes:
    prk = hmac.new(salt, ikm, hashlib.sha256).digest()
    out, t = b"", b""
    c = 1
    while len(out) < n:
        t = hmac.new(prk, t + info + bytes([c]), hashlib.sha256).digest()
        out += t
        c += 1
    return out[:n]

def safe_compare(a: bytes, b: bytes, expected_length: int = None) -> bool:
    if expected_length and (len(a) != expected_length or len(b) != expected_length):
        return False
    return hmac.compare_digest(a, b)

# --- Keys and identifiers ---

def generate_key() -> bytes:
    return secrets.token_bytes(KEY_BYTES)

def import_key(key_b64: str) -> bytes:
    return validate_base64(key_b64, "session key", KEY_BYTES, KEY_BYTES)

def generate_nonce() -> bytes:
    return secrets.token_bytes(TRANSFER_NONCE_BYTES)

def generate_room_id() -> str:
    return b64e(secrets.token_bytes(8))

def generate_peer_id() -> str:
    return b64e(secrets.token_bytes(16))

# --- AEAD ---

def require_aead():
    try:
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM
        return AESGCM
    except ImportError as e:
        raise RuntimeError("Missing dependency 'cryptography'") from e

def encrypt(key: bytes, plaintext: bytes) -> bytes:
    """AES-256-GCM with a fresh 96-bit nonce, returned as nonce || ciphertext."""
    AESGCM = require_aead()
    nonce = secrets.token_bytes(AEAD_NONCE_BYTES)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)

def decrypt(key: bytes, framed: bytes) -> bytes:
    if len(framed) < AEAD_NONCE_BYTES + AEAD_TAG_BYTES:
        raise IntegrityError(f"ciphertext too short: {len(framed)} bytes")

    from cryptography.exceptions import InvalidTag
    AESGCM = require_aead()
    try:
        return AESGCM(key).decrypt(framed[:AEAD_NONCE_BYTES], framed[AEAD_NONCE_BYTES:], None)
    except InvalidTag:
        raise IntegrityError("authentication failed")

# --- Per-transfer integrity ---

def derive_transfer_key(session_key: bytes, transfer_nonce: bytes) -> bytes:
    """HMAC key unique to one transfer; the session key is never used for HMAC directly."""
    return hkdf_sha256(session_key + transfer_nonce, salt=transfer_nonce, info=HMAC_INFO, n=TAG_BYTES)

def compute_tag(hmac_key: bytes, data: bytes) -> bytes:
    return hmac_sha256(hmac_key, data)

def new_tagger(hmac_key: bytes):
    """Incremental HMAC for tagging a file while it streams."""
    return hmac.new(hmac_key, digestmod=hashlib.sha256)

def verify_tag(hmac_key: bytes, data: bytes, tag: bytes) -> bool:
    return safe_compare(compute_tag(hmac_key, data), tag, TAG_BYTES)
