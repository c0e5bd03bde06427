from __future__ import annotations
import re

PROTO_VER = "1.0"

# Files are streamed in fixed-size chunks.
CHUNK_SIZE = 64 * 1024

# Single JSON frame ceiling; larger documents go out as JSON_CHUNK fragments.
# Leaves headroom under the data channel message limit after AEAD overhead.
MAX_JSON_SIZE = 48 * 1024

MAX_FILE_SIZE = 2 * 1024 * 1024 * 1024

class MsgType:
    JSON = 0
    FILE_CHUNK = 1
    UPLOAD_CHUNK = 2
    JSON_CHUNK = 3

MSG_TYPES = {MsgType.JSON, MsgType.FILE_CHUNK, MsgType.UPLOAD_CHUNK, MsgType.JSON_CHUNK}

# First byte of a binary websocket frame carrying a relayed payload.
BINARY_RELAY = 1

# --- Crypto ---

KEY_BYTES = 32
AEAD_NONCE_BYTES = 12
AEAD_TAG_BYTES = 16
TRANSFER_NONCE_BYTES = 16
TAG_BYTES = 32
HMAC_INFO = b"file-hmac"

MAX_B64_LENGTH = 64 * 1024

# --- Peer transport ---

DIRECT_TIMEOUT_S = 5.0
# The first direct frame is held this long; if the link dies meanwhile it is resent via the relay.
DIRECT_VERIFY_S = 0.01
BUFFER_HIGH = 4 * 1024 * 1024
BUFFER_LOW = 1024 * 1024
RELAY_WRITE_LIMIT = 4 * 1024 * 1024

JSON_CHUNK_TTL_S = 60.0
JSON_CHUNK_SWEEP_S = 15.0

ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:3478",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:3478",
    "stun:stun4.l.google.com:19302",
    "stun:stun.cloudflare.com:3478",
]

# --- Transfers ---

UPLOAD_TIMEOUT_S = 5 * 60
DOWNLOAD_IDLE_TIMEOUT_S = 60.0
DOWNLOAD_RATE_LIMIT = 60
UPLOAD_RATE_LIMIT = 30
RATE_WINDOW_S = 60.0
FOLDER_CONCURRENCY = 3
FOLDER_WATCH_S = 5.0

MAX_FILENAME_LENGTH = 255
MAX_PATH_DEPTH = 10

MAX_FILES = 50000
MAX_FILE_LIST_BYTES = 5 * 1024 * 1024

MAX_JSON_DEPTH = 10
MAX_JSON_KEYS = 100

class FileErrorCode:
    INVALID_PATH = "invalid_path"
    RATE_LIMITED = "rate_limited"
    TOO_LARGE = "too_large"
    NOT_FOUND = "not_found"
    READ_FAILED = "read_failed"

# --- Relay server ---

ROOM_ID_MAX_LENGTH = 32
ROOM_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

MAX_ROOMS = 100_000_000
MAX_PEERS_PER_ROOM = 256
MAX_RELAY_MESSAGE_BYTES = 2 * 1024 * 1024
MESSAGES_PER_MINUTE = 100_000_000
RELAY_BYTES_PER_MINUTE = 5000 * 1024 * 1024

ROOM_CLAIM_TTL_S = 300
REDIRECT_CLOSE_CODE = 4307
MAX_REDIRECTS = 2
INSTANCE_HEADER = "fly-force-instance-id"
JOIN_TIMEOUT_S = 30.0

class ErrorCode:
    INVALID_ROOM = "invalid_room"
    SERVER_FULL = "server_full"
    ROOM_FULL = "room_full"
    ALREADY_JOINED = "already_joined"
    MESSAGE_TOO_LARGE = "message_too_large"
