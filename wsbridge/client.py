"""WebSocket client speaking the event / invoke / response protocol."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

from websockets.sync.client import connect as _ws_connect

from .protocol import (
    DEFAULT_CALL_TIMEOUT,
    NOT_CONNECTED_MESSAGE,
    PING_TEXT,
    SEND_FAILED_MESSAGE,
    Codec,
    Dispatcher,
    PendingCalls,
    ResultCallback,
    default_codec,
    log,
    make_event,
    make_invoke,
)

_JOIN_TIMEOUT = 5.0


def _default_connector(url: str):
    return _ws_connect(url)


class Client:
    """Connects to a server, announces itself with a ``hello`` event and
    serves and makes calls over the connection.

    ``connector(url)`` must return an object with ``send(text)``, a blocking
    ``recv()`` that raises once the connection ends, and ``close()``.
    A background thread expires unanswered calls, sends heartbeats and drops
    a connection that has been silent for ``idle_timeout`` seconds.
    """

    def __init__(
        self,
        url: str,
        get_hello_data: Optional[Callable[[], Any]] = None,
        on_disconnect: Optional[Callable[["Client"], None]] = None,
        *,
        connector: Callable[[str], Any] = _default_connector,
        codec: Optional[Codec] = None,
        clock: Callable[[], float] = time.monotonic,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        ping_interval: float = 30.0,
        idle_timeout: float = 60.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.url = url
        self._get_hello_data = get_hello_data
        self._on_disconnect = on_disconnect
        self._connector = connector
        self._codec = codec or default_codec()
        self._clock = clock
        self._ping_interval = ping_interval
        self._idle_timeout = idle_timeout
        self._poll_interval = poll_interval

        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._conn: Any = None
        self._connecting = False
        self._abort = False
        self._closed = False
        self._worker: Optional[threading.Thread] = None
        self._last_received = 0.0
        self._last_ping = 0.0

        self._pending = PendingCalls(call_timeout, clock)
        self._dispatcher = Dispatcher(self._pending, self._codec)

        self._stop = threading.Event()
        self._maintenance = threading.Thread(
            target=self._maintain, name="wsbridge-client-maintenance", daemon=True
        )
        self._maintenance.start()

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- registration ----------------------------------------------------

    def register_function(self, name: str, func: Callable) -> None:
        """``func(param, respond)`` answers calls to ``name``."""
        self._dispatcher.register_function(name, func)

    def register_event(self, name: str, proc: Callable) -> None:
        """``proc(param)`` receives events called ``name``."""
        self._dispatcher.register_event(name, proc)

    def set_undefined_function_handler(self, handler: Optional[Callable]) -> None:
        """``handler(name, param, respond)`` answers calls to unregistered names."""
        self._dispatcher.set_undefined_function_handler(handler)

    def set_undefined_event_handler(self, handler: Optional[Callable]) -> None:
        """``handler(name, param)`` receives events with unregistered names."""
        self._dispatcher.set_undefined_event_handler(handler)

    # -- connection ------------------------------------------------------

    def connect(self) -> None:
        """Start connecting in the background unless connected or connecting."""
        with self._lock:
            if self._closed:
                raise RuntimeError("client is closed")
            if self._conn is not None or self._connecting:
                return
            self._connecting = True
            self._abort = False
            worker = threading.Thread(target=self._run, name="wsbridge-client", daemon=True)
            self._worker = worker
            worker.start()

    def disconnect(self) -> None:
        """Close the current connection, if any."""
        with self._lock:
            conn, self._conn = self._conn, None
            if self._connecting:
                self._abort = True
            worker = self._worker
        if conn is not None:
            try:
                conn.close()
            except Exception as exc:
                log(f"Error while closing: {exc}")
        if worker is not None and worker is not threading.current_thread():
            worker.join(_JOIN_TIMEOUT)

    def is_connected(self) -> bool:
        return self._conn is not None

    def close(self) -> None:
        """Disconnect for good, stop the background work and fail waiting calls."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        self.disconnect()
        if self._maintenance is not threading.current_thread():
            self._maintenance.join(_JOIN_TIMEOUT)
        self._pending.fail_all()

    def _run(self) -> None:
        try:
            conn = self._connector(self.url)
        except Exception as exc:
            log(f"Connection failed: {exc}")
            with self._lock:
                self._connecting = False
            self._notify_disconnect()
            return

        with self._lock:
            self._connecting = False
            aborted = self._abort or self._closed
            if not aborted:
                now = self._clock()
                self._conn = conn
                self._last_received = now
                self._last_ping = now
        if aborted:
            conn.close()
            return

        try:
            hello = self._get_hello_data() if self._get_hello_data else None
            self._send(self._codec.encode(make_event("hello", hello)))
            while True:
                try:
                    message = conn.recv()
                except Exception as exc:
                    log(f"Connection closed: {exc}")
                    break
                self._last_received = self._clock()
                if isinstance(message, (bytes, bytearray)):
                    message = bytes(message).decode("utf-8", "replace")
                try:
                    self._dispatcher.handle(message, self._send)
                except Exception as exc:
                    log(f"Error while handling message: {exc}")
        finally:
            with self._lock:
                if self._conn is conn:
                    self._conn = None
                self._last_received = 0.0
                self._last_ping = 0.0
            try:
                conn.close()
            except Exception:
                pass
            self._notify_disconnect()

    def _notify_disconnect(self) -> None:
        if not self._closed and self._on_disconnect is not None:
            self._on_disconnect(self)

    def _send(self, text: str) -> bool:
        with self._lock:
            conn = self._conn
        if conn is None:
            return False
        with self._send_lock:
            try:
                conn.send(text)
            except Exception as exc:
                log(f"Send failed: {exc}")
                return False
        return True

    # -- calls and events --------------------------------------------------

    def invoke_function(self, name: str, param: Any, callback: ResultCallback) -> None:
        """Ask the server to run ``name``; ``callback(success, message, data)`` gets the answer."""
        if not self.is_connected():
            callback(False, NOT_CONNECTED_MESSAGE, None)
            return
        call_id = self._pending.add(callback)
        if not self._send(self._codec.encode(make_invoke(call_id, name, param))):
            self._pending.resolve(call_id, False, SEND_FAILED_MESSAGE, None)

    def send_event(self, name: str, param: Any) -> bool:
        """Send an event; False when not connected or the send failed."""
        if not self.is_connected():
            return False
        text = self._codec.encode(make_event(name, param))
        log(f"Sending event: {text}")
        return self._send(text)

    # -- background work ---------------------------------------------------

    def _maintain(self) -> None:
        while not self._stop.wait(self._poll_interval):
            self._pending.expire()
            self._check_liveness()

    def _check_liveness(self) -> None:
        if not self.is_connected():
            return
        now = self._clock()
        if now - self._last_ping > self._ping_interval:
            self._send(PING_TEXT)
            self._last_ping = now
        if now - self._last_received > self._idle_timeout:
            log("No message received for a long time, disconnecting...")
            self.disconnect()