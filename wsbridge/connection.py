"""Sans-IO WebSocket connection: framing, heartbeats and the closing handshake.

The connection never touches a socket. Received bytes are handed to
:meth:`Connection.receive_data`, bytes to transmit are taken from
:meth:`Connection.data_to_send`, and :meth:`Connection.poll` drives the
timers (heartbeat and closing timeout).
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .closing import (
    ABNORMAL_CLOSE_MESSAGE,
    CONTINUATION_OPCODE_OUT_OF_SEQUENCE_MESSAGE,
    CONTROL_MESSAGE_FRAGMENTED_MESSAGE,
    DATA_OPCODE_OUT_OF_SEQUENCE_MESSAGE,
    INTERNAL_ERROR_MESSAGE,
    INVALID_FRAME_PAYLOAD_DATA_MESSAGE,
    NORMAL_CLOSURE_MESSAGE,
    PING_PAYLOAD_OVERSIZED_MESSAGE,
    PING_TIMEOUT_MESSAGE,
    PROTOCOL_ERROR_MESSAGE,
    RESERVED_BIT_USED_MESSAGE,
    CloseCode,
    CloseInfo,
    decode_close_payload,
    encode_close_payload,
)
from .frames import (
    CHUNK_SIZE,
    MAX_CONTROL_PAYLOAD,
    Frame,
    FrameError,
    FrameParser,
    Opcode,
    split_message,
)

CLOSING_MAXIMUM_WAITING_DELAY = 0.3
DEFAULT_PING_MESSAGE = "ixwebsocket::heartbeat"


class ReadyState(enum.Enum):
    """Lifecycle of a connection."""

    CLOSING = "closing"
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"


class MessageKind(enum.Enum):
    """What a received :class:`Message` carries."""

    TEXT = "text"
    BINARY = "binary"
    PING = "ping"
    PONG = "pong"
    FRAGMENT = "fragment"


class SendMessageKind(enum.Enum):
    """How heartbeats are sent."""

    TEXT = "text"
    BINARY = "binary"
    PING = "ping"


@dataclass(frozen=True)
class Message:
    """A message delivered to the application."""

    kind: MessageKind
    data: bytes
    wire_size: int
    decompression_error: bool = False

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")


@dataclass(frozen=True)
class SendInfo:
    """Outcome of a send."""

    success: bool
    compression_error: bool = False
    payload_size: int = 0
    wire_size: int = 0


def _time_mask_key() -> bytes:
    return (int(time.time()) & 0xFFFFFFFF).to_bytes(4, "big")


class Connection:
    """State machine of one WebSocket connection.

    Clients mask what they send (``mask=True``); servers do not.
    """

    def __init__(
        self,
        mask: bool = True,
        enable_pong: bool = True,
        ping_interval: int = -1,
        on_close: Optional[Callable[[CloseInfo], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        mask_key_factory: Optional[Callable[[], bytes]] = None,
    ) -> None:
        self.mask = mask
        self.enable_pong = enable_pong
        self.ping_interval = ping_interval
        self.on_close = on_close
        self.last_close: Optional[CloseInfo] = None
        self._clock = clock
        self._mask_key_factory = mask_key_factory or _time_mask_key

        self._state = ReadyState.CLOSED
        self._parser = FrameParser(allow_rsv1=False)
        self._outgoing = bytearray()
        self._chunks: list[bytes] = []
        self._fragment_kind = MessageKind.TEXT
        self._transport_closed = False

        self._reset_close_info()
        self._closing_time = clock()

        self._pong_received = False
        self._custom_ping_message = False
        self._ping_message = DEFAULT_PING_MESSAGE
        self._ping_type = SendMessageKind.PING
        self._ping_count = 0
        self._last_ping_time = clock()

    # -- state -----------------------------------------------------------

    @property
    def ready_state(self) -> ReadyState:
        return self._state

    @property
    def transport_closed(self) -> bool:
        """True once the underlying transport should be shut down."""
        return self._transport_closed

    def open(self) -> None:
        """Mark the handshake as done; the connection becomes OPEN."""
        self._transport_closed = False
        self._set_state(ReadyState.OPEN)

    def _reset_close_info(self) -> None:
        self._close_code: int = CloseCode.INTERNAL_ERROR
        self._close_reason = INTERNAL_ERROR_MESSAGE
        self._close_wire_size = 0
        self._close_remote = False

    def _set_state(self, state: ReadyState) -> None:
        if self._state is state:
            return
        if state is ReadyState.CLOSED:
            info = CloseInfo(
                self._close_code,
                self._close_reason,
                self._close_wire_size,
                self._close_remote,
            )
            self.last_close = info
            if self.on_close is not None:
                self.on_close(info)
            self._reset_close_info()
        elif state is ReadyState.OPEN:
            self._last_ping_time = self._clock()
            self._pong_received = False
        self._state = state

    def _close_and_switch_to_closed(
        self, code: int, reason: str, wire_size: int, remote: bool
    ) -> None:
        self._transport_closed = True
        self._close_code = code
        self._close_reason = reason
        self._close_wire_size = wire_size
        self._close_remote = remote
        self._set_state(ReadyState.CLOSED)

    # -- receiving -------------------------------------------------------

    def receive_data(self, data: bytes) -> list[Message]:
        """Process received bytes and return the messages they complete."""
        messages: list[Message] = []
        if self._state is ReadyState.CLOSED:
            return messages
        frames = self._parser.feed(data)
        while self._state is not ReadyState.CLOSED:
            pending = len(self._parser)
            try:
                frame = next(frames)
            except StopIteration:
                break
            except FrameError as exc:
                self._frame_error(str(exc), pending)
                break
            buffered = len(self._parser) + frame.size
            if not self._handle_frame(frame, buffered, messages):
                break
        if self._state is ReadyState.CLOSED:
            self._parser.clear()
        return messages

    def _frame_error(self, text: str, pending: int) -> None:
        if text.startswith("reserved bit"):
            self._close(CloseCode.PROTOCOL_ERROR, RESERVED_BIT_USED_MESSAGE, pending)
        elif text.startswith("control frame fragmented"):
            self._close(CloseCode.PROTOCOL_ERROR, CONTROL_MESSAGE_FRAGMENTED_MESSAGE)
        elif text.startswith("unexpected opcode"):
            self._close(CloseCode.PROTOCOL_ERROR, PROTOCOL_ERROR_MESSAGE, pending)
        # An out-of-range length is dropped without closing.

    def _handle_frame(self, frame: Frame, buffered: int, messages: list[Message]) -> bool:
        opcode = frame.opcode
        if opcode in (Opcode.TEXT, Opcode.BINARY, Opcode.CONTINUATION):
            self._handle_data_frame(frame, messages)
        elif opcode is Opcode.PING:
            if len(frame.payload) > MAX_CONTROL_PAYLOAD:
                self._close(CloseCode.PROTOCOL_ERROR, PING_PAYLOAD_OVERSIZED_MESSAGE)
                return False
            if self.enable_pong:
                self._send_data(Opcode.PONG, frame.payload)
            self._emit(MessageKind.PING, frame.payload, messages)
        elif opcode is Opcode.PONG:
            self._pong_received = True
            self._emit(MessageKind.PONG, frame.payload, messages)
        else:
            self._handle_close_frame(frame, buffered)
        return True

    def _handle_data_frame(self, frame: Frame, messages: list[Message]) -> None:
        if frame.opcode is not Opcode.CONTINUATION:
            self._fragment_kind = (
                MessageKind.TEXT if frame.opcode is Opcode.TEXT else MessageKind.BINARY
            )
            if self._chunks:
                self._close(CloseCode.PROTOCOL_ERROR, DATA_OPCODE_OUT_OF_SEQUENCE_MESSAGE)
        elif not self._chunks:
            self._close(
                CloseCode.PROTOCOL_ERROR, CONTINUATION_OPCODE_OUT_OF_SEQUENCE_MESSAGE
            )

        if frame.fin and not self._chunks:
            self._emit(self._fragment_kind, frame.payload, messages)
            return
        self._chunks.append(frame.payload)
        if frame.fin:
            merged = b"".join(self._chunks)
            self._chunks.clear()
            self._emit(self._fragment_kind, merged, messages)
        else:
            self._emit(MessageKind.FRAGMENT, b"", messages)

    def _emit(self, kind: MessageKind, data: bytes, messages: list[Message]) -> None:
        if kind is MessageKind.TEXT:
            try:
                data.decode("utf-8")
            except UnicodeDecodeError:
                self._close(
                    CloseCode.INVALID_FRAME_PAYLOAD_DATA,
                    INVALID_FRAME_PAYLOAD_DATA_MESSAGE,
                )
                return
        messages.append(Message(kind, data, len(data)))

    def _handle_close_frame(self, frame: Frame, buffered: int) -> None:
        info = decode_close_payload(frame.payload)
        if self._state is not ReadyState.CLOSING:
            self._set_state(ReadyState.CLOSING)
            self._send_close_frame(info.code, info.reason)
            self._close_and_switch_to_closed(info.code, info.reason, buffered, True)
        elif self._close_code == info.code and self._close_reason == info.reason:
            self._close_and_switch_to_closed(info.code, info.reason, buffered, False)

    def receive_eof(self) -> None:
        """The peer went away without finishing the closing handshake."""
        self._parser.clear()
        if self._state is ReadyState.CLOSING:
            self._transport_closed = True
            self._set_state(ReadyState.CLOSED)
        elif self._state is not ReadyState.CLOSED:
            self._close_and_switch_to_closed(
                CloseCode.ABNORMAL_CLOSE, ABNORMAL_CLOSE_MESSAGE, 0, False
            )

    # -- sending ---------------------------------------------------------

    def data_to_send(self) -> bytes:
        """Return and drain the bytes waiting to be written."""
        data = bytes(self._outgoing)
        self._outgoing.clear()
        return data

    def buffered_amount(self) -> int:
        """Number of bytes waiting to be written."""
        return len(self._outgoing)

    def _send_data(self, opcode: Opcode, payload: bytes) -> SendInfo:
        if self._state not in (ReadyState.OPEN, ReadyState.CLOSING):
            return SendInfo(False)
        payload = bytes(payload)
        key = self._mask_key_factory() if self.mask else None
        for frame in split_message(opcode, payload, CHUNK_SIZE, key):
            self._outgoing += frame
        return SendInfo(True, False, len(payload), len(payload))

    def send_text(self, message: Union[str, bytes]) -> SendInfo:
        """Queue a text message."""
        if isinstance(message, str):
            message = message.encode("utf-8")
        return self._send_data(Opcode.TEXT, message)

    def send_binary(self, message: bytes) -> SendInfo:
        """Queue a binary message."""
        return self._send_data(Opcode.BINARY, message)

    def send_ping(self, message: Union[str, bytes] = b"") -> SendInfo:
        """Queue a PING frame."""
        if isinstance(message, str):
            message = message.encode("utf-8")
        info = self._send_data(Opcode.PING, message)
        if info.success:
            self._last_ping_time = self._clock()
        return info

    def set_ping_message(self, message: str, kind: SendMessageKind = SendMessageKind.PING) -> None:
        """Use a fixed heartbeat text, sent as ``kind``."""
        self._custom_ping_message = True
        self._ping_message = message
        self._ping_type = SendMessageKind(kind)

    def send_heartbeat(self, kind: SendMessageKind) -> SendInfo:
        """Send one heartbeat of the given kind."""
        self._pong_received = False
        text = self._ping_message
        if not self._custom_ping_message:
            text = f"{text}::{self.ping_interval}s::{self._ping_count}"
            self._ping_count += 1
        kind = SendMessageKind(kind)
        if kind is SendMessageKind.PING:
            return self.send_ping(text)
        if kind is SendMessageKind.BINARY:
            info = self.send_binary(text.encode("utf-8"))
        else:
            info = self.send_text(text)
        if info.success:
            self._last_ping_time = self._clock()
        return info

    # -- closing ---------------------------------------------------------

    def _send_close_frame(self, code: int, reason: str) -> None:
        self._send_data(Opcode.CLOSE, encode_close_payload(code, reason))

    def close(
        self, code: int = CloseCode.NORMAL_CLOSURE, reason: str = NORMAL_CLOSURE_MESSAGE
    ) -> None:
        """Start the closing handshake; does nothing if already closing."""
        self._close(code, reason)

    def _close(self, code: int, reason: str, wire_size: int = 0, remote: bool = False) -> None:
        if self._state in (ReadyState.CLOSING, ReadyState.CLOSED):
            return
        if wire_size == 0:
            wire_size = len(reason.encode("utf-8"))
        self._close_code = code
        self._close_reason = reason
        self._close_wire_size = wire_size
        self._close_remote = remote
        self._closing_time = self._clock()
        self._set_state(ReadyState.CLOSING)
        self._send_close_frame(code, reason)

    # -- timers ----------------------------------------------------------

    def _ping_interval_exceeded(self) -> bool:
        if self.ping_interval <= 0:
            return False
        return self._clock() - self._last_ping_time > self.ping_interval

    def poll(self) -> Optional[float]:
        """Run the timers; return seconds until the next poll is due, or None."""
        if self._state is ReadyState.OPEN and self._ping_interval_exceeded():
            if self._ping_type is SendMessageKind.PING and not self._pong_received:
                self._close(CloseCode.INTERNAL_ERROR, PING_TIMEOUT_MESSAGE)
            else:
                self.send_heartbeat(self._ping_type)

        now = self._clock()
        if (
            self._state is ReadyState.CLOSING
            and now - self._closing_time > CLOSING_MAXIMUM_WAITING_DELAY
        ):
            self._parser.clear()
            self._transport_closed = True
            self._set_state(ReadyState.CLOSED)

        if self._state is ReadyState.OPEN and self.ping_interval > 0:
            return max(0.0, self.ping_interval - (now - self._last_ping_time))
        if self._state is ReadyState.CLOSING:
            return max(0.0, CLOSING_MAXIMUM_WAITING_DELAY - (now - self._closing_time))
        return None