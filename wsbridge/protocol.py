"""Message format, pending-call bookkeeping and dispatch shared by client and server.

Every message is a JSON object with a ``type`` of ``event``, ``invoke``,
``response``, ``ping`` or ``pong`` and, except for the heartbeats, a ``body``.
"""

from __future__ import annotations

import json
import threading
import time
import uuid
from typing import Any, Callable, Optional

TIMEOUT_MESSAGE = "调用超时"
NOT_CONNECTED_MESSAGE = "未连接"
SEND_FAILED_MESSAGE = "请求发送失败"
FUNCTION_NOT_FOUND_MESSAGE = "函数不存在"
CLIENT_NOT_FOUND_MESSAGE = "客户端不存在"

PING_TEXT = '{"type":"ping"}'
PONG_TEXT = '{"type":"pong"}'

DEFAULT_CALL_TIMEOUT = 30.0

ResultCallback = Callable[[bool, str, Any], None]


def _identity(text: str) -> str:
    return text


def _ignore(text: str) -> None:
    return None


_hooks: dict[str, Callable] = {"log": _ignore, "encode": _identity, "decode": _identity}


def set_log_function(log_func: Optional[Callable[[str], None]]) -> None:
    """Send diagnostic text to ``log_func``; ``None`` silences logging."""
    _hooks["log"] = log_func or _ignore


def set_cipher_function(
    encode_func: Optional[Callable[[str], str]],
    decode_func: Optional[Callable[[str], str]],
) -> None:
    """Transform every outgoing and incoming message text; ``None`` leaves it as is."""
    _hooks["encode"] = encode_func or _identity
    _hooks["decode"] = decode_func or _identity


def log(text: str) -> None:
    """Pass ``text`` to the configured log function."""
    _hooks["log"](text)


class Codec:
    """Turns messages into compact JSON text and back, applying the cipher.

    Without explicit functions the ones set by :func:`set_cipher_function`
    are used, looked up at each call.
    """

    def __init__(
        self,
        encode_func: Optional[Callable[[str], str]] = None,
        decode_func: Optional[Callable[[str], str]] = None,
    ) -> None:
        self._encode_func = encode_func
        self._decode_func = decode_func

    def encode(self, message: Any) -> str:
        """Serialise ``message`` and encipher the text."""
        text = json.dumps(message, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        return (self._encode_func or _hooks["encode"])(text)

    def decode(self, text: str) -> Any:
        """Decipher and parse ``text``; on a parse error log it and return None."""
        plain = (self._decode_func or _hooks["decode"])(text)
        try:
            return json.loads(plain)
        except ValueError as exc:
            log(f"Failed to parse message: {exc}")
            return None


_default_codec = Codec()


def default_codec() -> Codec:
    """The codec that follows the globally configured cipher."""
    return _default_codec


def format_call_id(value: Optional[uuid.UUID] = None) -> str:
    """Format a UUID as a call id; a fresh random one when none is given."""
    if value is None:
        value = uuid.uuid4()
    tail = value.bytes[8:]
    return (
        f"{value.time_low:08X}-{value.time_mid:04X}-{value.time_hi_version:04x}-"
        f"{tail[0]:02X}{tail[1]:02X}-" + "".join(f"{b:02X}" for b in tail[2:])
    )


def make_event(name: str, param: Any) -> dict:
    """An ``event`` message."""
    return {"type": "event", "body": {"name": name, "param": param}}


def make_invoke(call_id: str, name: str, param: Any) -> dict:
    """An ``invoke`` message asking the peer to run ``name``."""
    return {"type": "invoke", "body": {"name": name, "id": call_id, "param": param}}


def make_response(call_id: str, success: bool, message: str, data: Any) -> dict:
    """A ``response`` message answering the call ``call_id``."""
    return {
        "type": "response",
        "body": {"id": call_id, "success": success, "message": message, "data": data},
    }


class PendingCalls:
    """Callbacks waiting for responses, each with a deadline."""

    def __init__(
        self,
        timeout: float = DEFAULT_CALL_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = format_call_id,
    ) -> None:
        self.timeout = timeout
        self._clock = clock
        self._id_factory = id_factory
        self._calls: dict[str, tuple[float, ResultCallback]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._calls)

    def add(self, callback: ResultCallback) -> str:
        """Store ``callback`` and return the id that its response will carry."""
        call_id = self._id_factory()
        with self._lock:
            self._calls[call_id] = (self._clock() + self.timeout, callback)
        return call_id

    def resolve(self, call_id: str, success: bool, message: str, data: Any) -> bool:
        """Run and forget the callback for ``call_id``; False if there is none."""
        with self._lock:
            entry = self._calls.pop(call_id, None)
        if entry is None:
            return False
        entry[1](success, message, data)
        return True

    def expire(self, now: Optional[float] = None) -> int:
        """Fail every call whose deadline has passed; return how many."""
        if now is None:
            now = self._clock()
        count = 0
        while True:
            with self._lock:
                expired = next(
                    (key for key, (deadline, _) in self._calls.items() if now >= deadline),
                    None,
                )
                if expired is None:
                    return count
                _, callback = self._calls.pop(expired)
            callback(False, TIMEOUT_MESSAGE, None)
            count += 1

    def fail_all(self, message: str = TIMEOUT_MESSAGE) -> int:
        """Fail every waiting call with ``message``; return how many."""
        with self._lock:
            callbacks = [callback for _, callback in self._calls.values()]
            self._calls.clear()
        for callback in callbacks:
            callback(False, message, None)
        return len(callbacks)


def _as_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return ""


def _as_bool(value: Any) -> bool:
    if isinstance(value, (bool, int, float)):
        return bool(value)
    return False


def _member(body: Any, key: str) -> Any:
    return body.get(key) if isinstance(body, dict) else None


class Dispatcher:
    """Routes received messages to registered functions and events.

    Extra positional arguments given to :meth:`handle` (a client id on the
    server side) are passed to every handler before the parameter.
    """

    def __init__(self, pending: PendingCalls, codec: Optional[Codec] = None) -> None:
        self.pending = pending
        self.codec = codec or default_codec()
        self._functions: dict[str, Callable] = {}
        self._events: dict[str, Callable] = {}
        self._undefined_function_handler: Optional[Callable] = None
        self._undefined_event_handler: Optional[Callable] = None

    def register_function(self, name: str, func: Callable) -> None:
        self._functions[name] = func

    def register_event(self, name: str, proc: Callable) -> None:
        self._events[name] = proc

    def set_undefined_function_handler(self, handler: Optional[Callable]) -> None:
        self._undefined_function_handler = handler

    def set_undefined_event_handler(self, handler: Optional[Callable]) -> None:
        self._undefined_event_handler = handler

    def handle(self, text: str, send: Callable[[str], Any], *args: Any) -> Optional[str]:
        """Process one received text; return its message type, or None if ignored."""
        log(f"Received message: {text}")
        root = self.codec.decode(text)
        if root is None:
            log("Message is null")
            return None
        if not isinstance(root, dict):
            log("Message is not an object")
            return None
        kind = _as_string(root.get("type"))
        if kind == "ping":
            send(PONG_TEXT)
            return kind
        if kind == "pong":
            return kind
        body = root.get("body")
        if body is None:
            log("Message body is null")
            return None
        if kind == "event":
            self._handle_event(body, args)
        elif kind == "invoke":
            self._handle_invoke(body, send, args)
        elif kind == "response":
            self.pending.resolve(
                _as_string(_member(body, "id")),
                _as_bool(_member(body, "success")),
                _as_string(_member(body, "message")),
                _member(body, "data"),
            )
        else:
            log(f"Unknown message type: {kind}")
            return None
        return kind

    def _handle_event(self, body: Any, args: tuple) -> None:
        name = _as_string(_member(body, "name"))
        param = _member(body, "param")
        proc = self._events.get(name)
        if proc is not None:
            proc(*args, param)
        elif self._undefined_event_handler is not None:
            self._undefined_event_handler(name, *args, param)

    def _handle_invoke(self, body: Any, send: Callable[[str], Any], args: tuple) -> None:
        name = _as_string(_member(body, "name"))
        call_id = _as_string(_member(body, "id"))
        param = _member(body, "param")

        def respond(success: bool, message: str = "", data: Any = None) -> None:
            text = self.codec.encode(make_response(call_id, success, message, data))
            log(f"Sending response for function {name}: {text}")
            send(text)

        func = self._functions.get(name)
        if func is not None:
            func(*args, param, respond)
        elif self._undefined_function_handler is None:
            respond(False, FUNCTION_NOT_FOUND_MESSAGE, None)
        else:
            self._undefined_function_handler(name, *args, param, respond)