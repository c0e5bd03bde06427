from __future__ import annotations
import secrets
import sys

from ..core.crypto import (
    require_aead, encrypt, decrypt, generate_key, generate_nonce, derive_transfer_key,
)
from ..core.encoding import b64d
from ..core.errors import IntegrityError
from .link import require_rtc

def security_self_check(logger, require_direct: bool = False):
    checks = []

    checks.append(("Python >= 3.9", sys.version_info >= (3, 9), "Python 3.9+ required"))

    try:
        test = [secrets.randbits(16) for _ in range(10)]
        checks.append(("Random source", all(x != 0 for x in test), "Weak random detected"))
    except Exception:
        checks.append(("Random source", False, "Random test failed"))

    try:
        require_aead()
        checks.append(("AEAD (AES-256-GCM)", True, ""))
    except RuntimeError:
        checks.append(("AEAD (AES-256-GCM)", False, "cryptography package not installed"))

    try:
        key = generate_key()
        sealed = encrypt(key, b"partake")
        ok = decrypt(key, sealed) == b"partake"
        try:
            decrypt(key, sealed[:-1] + bytes([sealed[-1] ^ 1]))
            ok = False
        except IntegrityError:
            pass
        checks.append(("AEAD round trip", ok, "Tampered ciphertext accepted"))
    except Exception as e:
        checks.append(("AEAD round trip", False, str(e)))

    key, nonce = generate_key(), generate_nonce()
    checks.append((
        "Transfer key derivation",
        derive_transfer_key(key, nonce) == derive_transfer_key(key, nonce)
        and derive_transfer_key(key, nonce) != derive_transfer_key(key, generate_nonce()),
        "HKDF output not deterministic per nonce",
    ))

    try:
        b64d("aW52YWxpZCBwYWRkaW5n")
        checks.append(("Base64 strict decode (valid)", True, ""))
    except Exception:
        checks.append(("Base64 strict decode (valid)", False, "Valid base64 rejected"))

    try:
        b64d("invalid!@#$")
        checks.append(("Base64 strict decode (invalid)", False, "Invalid base64 accepted"))
    except ValueError:
        checks.append(("Base64 strict decode (invalid)", True, ""))

    try:
        require_rtc()
        checks.append(("Direct transport (aiortc)", True, ""))
    except RuntimeError:
        if require_direct:
            checks.append(("Direct transport (aiortc)", False, "aiortc package not installed"))
        else:
            logger.warning("security_check", check="Direct transport (aiortc)", status="UNAVAILABLE",
                           reason="relay-only mode")

    all_ok = True
    for name, ok, reason in checks:
        all_ok = all_ok and ok
        if ok:
            logger.info("security_check", check=name, status="OK")
        else:
            logger.error("security_check", check=name, status="FAILED", reason=reason)

    if not all_ok:
        raise RuntimeError("Security self-check failed")

    logger.info("security_self_check_passed")
    return True
