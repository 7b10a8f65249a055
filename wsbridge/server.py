"""WebSocket server speaking the event / invoke / response protocol."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

from .protocol import (
    CLIENT_NOT_FOUND_MESSAGE,
    DEFAULT_CALL_TIMEOUT,
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

DEFAULT_HOST = "127.0.0.1"
_JOIN_TIMEOUT = 5.0


def _default_serve(handler: Callable[[Any], None], host: str, port: int):
    from websockets.sync.server import serve

    return serve(handler, host, port)


def _request_path(conn: Any) -> str:
    request = getattr(conn, "request", None)
    path = getattr(request, "path", None)
    return path if isinstance(path, str) else ""


class _Peer:
    """One accepted connection, with sends serialised."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self._lock = threading.Lock()

    def send(self, text: str) -> bool:
        with self._lock:
            try:
                self.conn.send(text)
            except Exception as exc:
                log(f"Send failed: {exc}")
                return False
        return True

    def close(self) -> None:
        try:
            self.conn.close()
        except Exception as exc:
            log(f"Error while closing: {exc}")


class Server:
    """Accepts clients, names them through ``on_connect`` and exchanges
    events and calls with them.

    ``on_connect(path)`` returns the id of the new client, or an empty
    string to refuse it. ``on_disconnect(client_id)`` is told when an
    accepted client goes away. A background thread fails calls that got
    no answer within ``call_timeout`` seconds.
    """

    def __init__(
        self,
        port: int,
        on_connect: Callable[[str], str],
        on_disconnect: Optional[Callable[[str], None]] = None,
        *,
        host: str = DEFAULT_HOST,
        codec: Optional[Codec] = None,
        clock: Callable[[], float] = time.monotonic,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        poll_interval: float = 1.0,
        serve_factory: Callable[..., Any] = _default_serve,
    ) -> None:
        self.host = host
        self._port = port
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._codec = codec or default_codec()
        self._serve_factory = serve_factory
        self._poll_interval = poll_interval

        self._lock = threading.Lock()
        self._clients: dict[str, _Peer] = {}
        self._ws_server: Any = None
        self._serve_thread: Optional[threading.Thread] = None
        self._closed = False

        self._pending = PendingCalls(call_timeout, clock)
        self._dispatcher = Dispatcher(self._pending, self._codec)

        self._stop = threading.Event()
        self._maintenance = threading.Thread(
            target=self._maintain, name="wsbridge-server-maintenance", daemon=True
        )
        self._maintenance.start()

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def client_ids(self) -> list[str]:
        """Ids of the clients currently connected, sorted."""
        with self._lock:
            return sorted(self._clients)

    # -- registration ----------------------------------------------------

    def register_function(self, name: str, func: Callable) -> None:
        """``func(client_id, param, respond)`` answers calls to ``name``."""
        self._dispatcher.register_function(name, func)

    def register_event(self, name: str, proc: Callable) -> None:
        """``proc(client_id, param)`` receives events called ``name``."""
        self._dispatcher.register_event(name, proc)

    def set_undefined_function_handler(self, handler: Optional[Callable]) -> None:
        """``handler(name, client_id, param, respond)`` answers unregistered calls."""
        self._dispatcher.set_undefined_function_handler(handler)

    def set_undefined_event_handler(self, handler: Optional[Callable]) -> None:
        """``handler(name, client_id, param)`` receives unregistered events."""
        self._dispatcher.set_undefined_event_handler(handler)

    # -- lifecycle -------------------------------------------------------

    def start(self) -> bool:
        """Listen and serve in the background; False if listening failed."""
        with self._lock:
            if self._closed:
                raise RuntimeError("server is closed")
            if self._ws_server is not None:
                return True
            try:
                ws_server = self._serve_factory(self._serve_connection, self.host, self._port)
            except OSError as exc:
                log(f"Failed to listen: {exc}")
                return False
            self._ws_server = ws_server
            thread = threading.Thread(
                target=ws_server.serve_forever, name="wsbridge-server", daemon=True
            )
            self._serve_thread = thread
        thread.start()
        return True

    def stop(self) -> None:
        """Stop listening and close every client connection."""
        with self._lock:
            ws_server, self._ws_server = self._ws_server, None
            thread, self._serve_thread = self._serve_thread, None
            peers = list(self._clients.values())
        if ws_server is not None:
            try:
                ws_server.shutdown()
            except Exception as exc:
                log(f"Error while stopping: {exc}")
        for peer in peers:
            peer.close()
        if thread is not None and thread is not threading.current_thread():
            thread.join(_JOIN_TIMEOUT)

    def close(self) -> None:
        """Stop for good, end the background work and fail waiting calls."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.stop()
        self._stop.set()
        if self._maintenance is not threading.current_thread():
            self._maintenance.join(_JOIN_TIMEOUT)
        self._pending.fail_all()

    def get_port(self) -> int:
        """The port bound while serving, otherwise the configured one."""
        with self._lock:
            ws_server = self._ws_server
        sock = getattr(ws_server, "socket", None) if ws_server is not None else None
        if sock is not None:
            return sock.getsockname()[1]
        return self._port

    # -- connections -----------------------------------------------------

    def _serve_connection(self, conn: Any) -> None:
        client_id = self._on_connect(_request_path(conn))
        if not client_id:
            try:
                conn.close()
            except Exception:
                pass
            return
        peer = _Peer(conn)
        with self._lock:
            self._clients[client_id] = peer
        try:
            while True:
                try:
                    message = conn.recv()
                except Exception as exc:
                    log(f"Connection closed: {exc}")
                    break
                if isinstance(message, (bytes, bytearray)):
                    message = bytes(message).decode("utf-8", "replace")
                try:
                    self._dispatcher.handle(message, peer.send, client_id)
                except Exception as exc:
                    log(f"Error while handling message: {exc}")
        finally:
            peer.close()
            if self._on_disconnect is not None:
                self._on_disconnect(client_id)
            with self._lock:
                if self._clients.get(client_id) is peer:
                    del self._clients[client_id]

    def _peer(self, client_id: str) -> Optional[_Peer]:
        with self._lock:
            return self._clients.get(client_id)

    def disconnect_client(self, client_id: str) -> None:
        """Close the connection of ``client_id``, if connected."""
        with self._lock:
            peer = self._clients.pop(client_id, None)
        if peer is not None:
            peer.close()

    # -- calls and events --------------------------------------------------

    def invoke_function(
        self, client_id: str, name: str, param: Any, callback: ResultCallback
    ) -> None:
        """Ask ``client_id`` to run ``name``; ``callback(success, message, data)`` gets the answer."""
        peer = self._peer(client_id)
        if peer is None:
            callback(False, CLIENT_NOT_FOUND_MESSAGE, None)
            return
        call_id = self._pending.add(callback)
        if not peer.send(self._codec.encode(make_invoke(call_id, name, param))):
            self._pending.resolve(call_id, False, SEND_FAILED_MESSAGE, None)

    def send_event(self, client_id: str, name: str, param: Any) -> bool:
        """Send an event to one client; False if unknown or the send failed."""
        peer = self._peer(client_id)
        if peer is None:
            return False
        return peer.send(self._codec.encode(make_event(name, param)))

    def broadcast_event(self, name: str, param: Any) -> None:
        """Send an event to every connected client."""
        text = self._codec.encode(make_event(name, param))
        with self._lock:
            peers = list(self._clients.values())
        for peer in peers:
            peer.send(text)

    # -- background work ---------------------------------------------------

    def _maintain(self) -> None:
        while not self._stop.wait(self._poll_interval):
            self._pending.expire()