from __future__ import annotations
from typing import Optional

class PartakeError(Exception):
    pass

class ProtocolError(PartakeError):
    """Malformed frame, unknown type or inconsistent chunk bounds."""

class IntegrityError(PartakeError):
    """Authentication tag mismatch or truncated ciphertext."""

class CapacityError(PartakeError):
    """Room full, server at capacity, rate limit or oversize input."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code

class ResourceTimeout(PartakeError):
    pass

class TransportFailure(PartakeError):
    pass

class RoomRedirect(PartakeError):
    def __init__(self, owner: Optional[str]):
        super().__init__(f"room owned by instance {owner}")
        self.owner = owner
