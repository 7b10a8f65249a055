"""Extension endpoint: one working connection plus an optional test connection."""

from __future__ import annotations

import os
import sys
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from .client import Client

TEST_URL = "ws://127.0.0.1:5555/Extend"
TEST_ENABLE_MARKER = Path(tempfile.gettempdir()) / "Extend_Test_Enable_Mutex"
_JOIN_TIMEOUT = 5.0


def _test_marker_exists() -> bool:
    return TEST_ENABLE_MARKER.exists()


class Extension:
    """Keeps a working client connected to ``url`` and, while testing is
    enabled, a second client connected to the local test server.

    Both announce themselves with the platform, version, process id and the
    data returned by ``hello_data``. The working client reconnects whenever
    its connection drops; the test client is connected by a watcher that
    checks ``test_enabled()`` every ``check_interval`` seconds.
    """

    def __init__(
        self,
        *,
        client_factory: Callable[..., Any] = Client,
        test_enabled: Callable[[], bool] = _test_marker_exists,
        check_interval: float = 5.0,
        reconnect_delay: float = 1.0,
    ) -> None:
        self._client_factory = client_factory
        self._test_enabled = test_enabled
        self._check_interval = check_interval
        self._reconnect_delay = reconnect_delay
        self._lock = threading.Lock()
        self._platform = ""
        self._version = ""
        self._hello_data: Optional[Callable[[], Any]] = None
        self._ws: Any = None
        self._test_ws: Any = None
        self._stop: Optional[threading.Event] = None
        self._watcher: Optional[threading.Thread] = None

    def _hello(self) -> dict:
        return {
            "platform": self._platform,
            "version": self._version,
            "pid": os.getpid(),
            "data": self._hello_data() if self._hello_data else None,
        }

    def initialize(
        self,
        url: str,
        platform: str,
        version: str,
        hello_data: Optional[Callable[[], Any]] = None,
    ) -> bool:
        """Create both clients and start the test watcher; False if already done."""
        with self._lock:
            if self._ws is not None or self._test_ws is not None:
                return False
            self._platform = platform
            self._version = version
            self._hello_data = hello_data
            stop = threading.Event()
            self._stop = stop
            self._ws = self._client_factory(url, self._hello, self._reconnect)
            self._test_ws = self._client_factory(TEST_URL, self._hello, None)
            watcher = threading.Thread(
                target=self._watch,
                args=(self._test_ws, stop),
                name="wsbridge-extend-watcher",
                daemon=True,
            )
            self._watcher = watcher
        watcher.start()
        return True

    def _reconnect(self, client: Any) -> None:
        stop = self._stop
        if stop is None or stop.wait(self._reconnect_delay):
            return
        try:
            client.connect()
        except RuntimeError:
            pass

    def _watch(self, client: Any, stop: threading.Event) -> None:
        while not stop.is_set():
            if not client.is_connected() and self._test_enabled():
                try:
                    client.connect()
                except RuntimeError:
                    return
            if stop.wait(self._check_interval):
                return

    def connect(self) -> None:
        """Connect the working client unless it is connected already."""
        ws = self._ws
        if ws is not None and not ws.is_connected():
            ws.connect()

    def uninitialize(self) -> None:
        """Close both clients and stop the watcher."""
        with self._lock:
            stop, self._stop = self._stop, None
            watcher, self._watcher = self._watcher, None
            test_ws, self._test_ws = self._test_ws, None
            ws, self._ws = self._ws, None
        if stop is not None:
            stop.set()
        if test_ws is not None:
            test_ws.close()
        if ws is not None:
            ws.close()
        if watcher is not None and watcher is not threading.current_thread():
            watcher.join(_JOIN_TIMEOUT)

    def register_function(self, name: str, func: Callable) -> None:
        """Answer calls to ``name`` on both connections."""
        for client in (self._ws, self._test_ws):
            if client is not None:
                client.register_function(name, func)

    def register_event(self, name: str, callback: Callable) -> None:
        """Receive events called ``name`` on both connections."""
        for client in (self._ws, self._test_ws):
            if client is not None:
                client.register_event(name, callback)

    def invoke_function(self, name: str, args: Any, callback: Callable) -> bool:
        """Call ``name`` over the working connection; False before initialising."""
        ws = self._ws
        if ws is None:
            return False
        ws.invoke_function(name, args, callback)
        return True

    def send_event(self, name: str, data: Any) -> None:
        """Send an event over both connections."""
        for client in (self._ws, self._test_ws):
            if client is not None:
                client.send_event(name, data)


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point of the demonstration program."""
    sys.stdout.write("Hello World!\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())