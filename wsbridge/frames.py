"""WebSocket frame encoding and incremental decoding."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterator, Optional

CHUNK_SIZE = 1 << 15
MAX_FRAME_SIZE = 1 << 63
MAX_CONTROL_PAYLOAD = 125


class Opcode(enum.IntEnum):
    """Frame opcodes."""

    CONTINUATION = 0x0
    TEXT = 0x1
    BINARY = 0x2
    CLOSE = 0x8
    PING = 0x9
    PONG = 0xA

    @property
    def is_control(self) -> bool:
        return self >= Opcode.CLOSE


class FrameError(Exception):
    """A frame broke the framing protocol."""


@dataclass(frozen=True)
class Frame:
    """One decoded frame; ``payload`` is already unmasked."""

    opcode: Opcode
    payload: bytes
    fin: bool = True
    rsv1: bool = False
    rsv2: bool = False
    rsv3: bool = False
    masked: bool = False
    size: int = 0

    @property
    def is_control(self) -> bool:
        return self.opcode.is_control


def mask_payload(payload: bytes, key: bytes) -> bytes:
    """XOR ``payload`` with the repeating four-byte ``key``."""
    key = bytes(key)
    if len(key) != 4:
        raise ValueError("masking key must be exactly 4 bytes")
    if not payload:
        return b""
    length = len(payload)
    stream = (key * (length // 4 + 1))[:length]
    mixed = int.from_bytes(payload, "big") ^ int.from_bytes(stream, "big")
    return mixed.to_bytes(length, "big")


def encode_frame(
    opcode: Opcode,
    payload: bytes,
    fin: bool = True,
    mask_key: Optional[bytes] = None,
    compressed: bool = False,
) -> bytes:
    """Build the wire bytes of a single frame.

    ``mask_key`` masks the payload (clients must mask, servers must not);
    ``compressed`` sets RSV1, except on continuation frames.
    """
    opcode = Opcode(opcode)
    payload = bytes(payload)
    size = len(payload)
    if size >= 1 << 64:
        raise ValueError("payload too large for a single frame")

    first = int(opcode)
    if fin:
        first |= 0x80
    if compressed and opcode is not Opcode.CONTINUATION:
        first |= 0x40

    mask_bit = 0x80 if mask_key is not None else 0
    header = bytearray([first])
    if size < 126:
        header.append(size | mask_bit)
    elif size < 65536:
        header.append(126 | mask_bit)
        header += size.to_bytes(2, "big")
    else:
        header.append(127 | mask_bit)
        header += size.to_bytes(8, "big")

    if mask_key is not None:
        header += bytes(mask_key)
        payload = mask_payload(payload, mask_key)
    return bytes(header) + payload


def split_message(
    opcode: Opcode,
    payload: bytes,
    chunk_size: int = CHUNK_SIZE,
    mask_key: Optional[bytes] = None,
) -> list[bytes]:
    """Encode a message, fragmenting it when it reaches ``chunk_size``.

    A message of ``n`` bytes with ``n >= chunk_size`` becomes
    ``n // chunk_size`` frames; the last one carries the remainder.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    opcode = Opcode(opcode)
    payload = bytes(payload)
    if len(payload) < chunk_size:
        return [encode_frame(opcode, payload, True, mask_key)]

    steps = len(payload) // chunk_size
    frames = []
    for step in range(steps):
        last = step + 1 == steps
        start = step * chunk_size
        chunk = payload[start:] if last else payload[start:start + chunk_size]
        kind = opcode if step == 0 else Opcode.CONTINUATION
        frames.append(encode_frame(kind, chunk, last, mask_key))
    return frames


class FrameParser:
    """Incremental decoder: feed received bytes, get complete frames back.

    After a :class:`FrameError` the buffered input is discarded.
    """

    def __init__(self, allow_rsv1: bool = False) -> None:
        self.allow_rsv1 = allow_rsv1
        self.wanted = 0
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> Iterator[Frame]:
        """Buffer ``data`` and return an iterator over the frames now complete."""
        self._buffer += data
        return self._frames()

    def clear(self) -> None:
        """Drop all buffered input."""
        self._buffer.clear()
        self.wanted = 0

    def _frames(self) -> Iterator[Frame]:
        while True:
            frame = self._next_frame()
            if frame is None:
                return
            yield frame

    def _fail(self, message: str) -> FrameError:
        self.clear()
        return FrameError(message)

    def _next_frame(self) -> Optional[Frame]:
        buf = self._buffer
        if len(buf) < 2:
            return None
        first, second = buf[0], buf[1]
        fin = bool(first & 0x80)
        rsv1 = bool(first & 0x40)
        rsv2 = bool(first & 0x20)
        rsv3 = bool(first & 0x10)
        raw_opcode = first & 0x0F
        masked = bool(second & 0x80)
        n0 = second & 0x7F

        header_size = 2 + (2 if n0 == 126 else 0) + (8 if n0 == 127 else 0)
        header_size += 4 if masked else 0
        if len(buf) < header_size:
            return None

        if (rsv1 and not self.allow_rsv1) or rsv2 or rsv3:
            raise self._fail("reserved bit used")

        if n0 < 126:
            length, offset = n0, 2
        elif n0 == 126:
            length, offset = int.from_bytes(buf[2:4], "big"), 4
        else:
            length, offset = int.from_bytes(buf[2:10], "big"), 10

        if length > MAX_FRAME_SIZE:
            raise self._fail("frame length out of range")

        key = bytes(buf[offset:offset + 4]) if masked else b"\x00\x00\x00\x00"

        total = header_size + length
        if len(buf) < total:
            self.wanted = total
            return None
        self.wanted = 0

        payload = bytes(buf[header_size:total])
        del buf[:total]

        try:
            opcode = Opcode(raw_opcode)
        except ValueError:
            raise self._fail(f"unexpected opcode {raw_opcode:#x}") from None

        if not fin and opcode.is_control:
            raise self._fail("control frame fragmented")

        if masked:
            payload = mask_payload(payload, key)

        return Frame(
            opcode=opcode,
            payload=payload,
            fin=fin,
            rsv1=rsv1,
            rsv2=rsv2,
            rsv3=rsv3,
            masked=masked,
            size=total,
        )