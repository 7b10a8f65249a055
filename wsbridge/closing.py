"""Close codes and the payload of CLOSE frames."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union

NORMAL_CLOSURE_MESSAGE = "Normal closure"
INTERNAL_ERROR_MESSAGE = "Internal error"
ABNORMAL_CLOSE_MESSAGE = "Abnormal closure"
PROTOCOL_ERROR_MESSAGE = "Protocol error"
NO_STATUS_CODE_MESSAGE = "No status code"
INVALID_FRAME_PAYLOAD_DATA_MESSAGE = "Invalid frame payload data"
INVALID_CLOSE_CODE_MESSAGE = "Invalid close code"
PING_TIMEOUT_MESSAGE = "Ping timeout"
RESERVED_BIT_USED_MESSAGE = "Reserved bit used"
CONTROL_MESSAGE_FRAGMENTED_MESSAGE = "Control message fragmented"
DATA_OPCODE_OUT_OF_SEQUENCE_MESSAGE = "Data opcode out of sequence"
CONTINUATION_OPCODE_OUT_OF_SEQUENCE_MESSAGE = "Continuation opcode out of sequence"
PING_PAYLOAD_OVERSIZED_MESSAGE = "Ping payload oversized"


class CloseCode(enum.IntEnum):
    """Status codes carried by CLOSE frames."""

    NORMAL_CLOSURE = 1000
    GOING_AWAY = 1001
    PROTOCOL_ERROR = 1002
    UNSUPPORTED_DATA = 1003
    NO_STATUS_CODE = 1005
    ABNORMAL_CLOSE = 1006
    INVALID_FRAME_PAYLOAD_DATA = 1007
    POLICY_VIOLATION = 1008
    MESSAGE_TOO_BIG = 1009
    MANDATORY_EXTENSION = 1010
    INTERNAL_ERROR = 1011


@dataclass(frozen=True)
class CloseInfo:
    """Why a connection closed, and whether the remote side started it."""

    code: int = CloseCode.INTERNAL_ERROR
    reason: str = INTERNAL_ERROR_MESSAGE
    wire_size: int = 0
    remote: bool = False


def is_valid_close_code(code: int) -> bool:
    """Tell whether ``code`` may appear in a received CLOSE frame."""
    if code < 1000 or code > 0xFFFF:
        return False
    if code in (1004, 1006):
        return False
    return not 1013 < code < 3000


def encode_close_payload(code: int, reason: Union[str, bytes] = "") -> bytes:
    """Build the payload of a CLOSE frame.

    The "no status code" code produces an empty payload.
    """
    if not 0 <= code <= 0xFFFF:
        raise ValueError(f"close code out of range: {code}")
    if code == CloseCode.NO_STATUS_CODE:
        return b""
    if isinstance(reason, str):
        reason = reason.encode("utf-8")
    return code.to_bytes(2, "big") + bytes(reason)


def decode_close_payload(payload: bytes) -> CloseInfo:
    """Read the code and reason of a received CLOSE frame.

    A reason that is not UTF-8 and a code that is not allowed are replaced
    by an error code and message, as the peer has broken the protocol.
    """
    payload = bytes(payload)
    if len(payload) < 2:
        return CloseInfo(CloseCode.NO_STATUS_CODE, NO_STATUS_CODE_MESSAGE)

    code = int.from_bytes(payload[:2], "big")
    try:
        reason = payload[2:].decode("utf-8")
    except UnicodeDecodeError:
        code = CloseCode.INVALID_FRAME_PAYLOAD_DATA
        reason = INVALID_FRAME_PAYLOAD_DATA_MESSAGE

    if not is_valid_close_code(code):
        reason = f"{INVALID_CLOSE_CODE_MESSAGE}: {code}"
        code = CloseCode.PROTOCOL_ERROR

    return CloseInfo(code, reason)