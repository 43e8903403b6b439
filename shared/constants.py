"""Constants shared between the talk client and server."""

from enum import IntEnum

# Network constants
DEFAULT_HOST = 'localhost'
DEFAULT_SERVER_HOST = '0.0.0.0'
COMM_PORT = 7878

# Size of the network buffer in bytes. Every envelope travels in one buffer.
NET_BUFF_SIZE = 512

# Account IDs are unsigned 64-bit integers.
USER_ID_SIZE = 8
MAX_USER_ID = 2 ** 64 - 1

# Password length limits. The minimum counts characters, the maximum counts
# UTF-8 bytes because it is the size of the region reserved on the wire.
MIN_PASS_CHAR_LEN = 4
MAX_PASS_BYTE_LEN = 30

# Maximum message content length in bytes.
MAX_MESSAGE_BYTE_LEN = 128

# Contact counts are sent as a single unsigned byte.
MAX_CONTACTS = 255


class ErrorCode(IntEnum):
    """Reasons the server gives in a Rejected reply."""
    BAD_LOGIN_DATA = 0
    INVALID_USER_ID = 1
    INVALID_PASSWORD = 2
    INVALID_OPERATION = 3
    UNKNOWN = 4
