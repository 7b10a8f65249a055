import json
import queue
import threading
import time

import pytest

from wsbridge.client import Client
from wsbridge.protocol import (
    NOT_CONNECTED_MESSAGE,
    PING_TEXT,
    PONG_TEXT,
    SEND_FAILED_MESSAGE,
    TIMEOUT_MESSAGE,
    make_event,
    make_invoke,
    make_response,
)

URL = "ws://127.0.0.1:5555/Extend"


class FakeConnection:
    def __init__(self):
        self.incoming = queue.Queue()
        self.sent = []
        self.fail_send = False
        self.closed = threading.Event()

    def send(self, text):
        if self.fail_send:
            raise OSError("broken pipe")
        self.sent.append(text)

    def recv(self):
        item = self.incoming.get()
        if item is None:
            raise EOFError("closed")
        return item

    def push(self, message):
        self.incoming.put(json.dumps(message))

    def close(self):
        self.closed.set()
        self.incoming.put(None)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def harness():
    fake = FakeConnection()
    clients = []

    def make(**kwargs):
        kwargs.setdefault("connector", lambda url: fake)
        kwargs.setdefault("poll_interval", 0.01)
        client = Client(URL, **kwargs)
        clients.append(client)
        return client

    yield fake, make
    for client in clients:
        client.close()


def connected(fake, make, **kwargs):
    client = make(**kwargs)
    client.connect()
    assert wait_for(lambda: len(fake.sent) >= 1)
    return client


def test_invoke_when_not_connected(harness):
    _, make = harness
    client = make()
    results = []
    client.invoke_function("f", None, lambda *a: results.append(a))
    assert results == [(False, NOT_CONNECTED_MESSAGE, None)]
    assert client.send_event("e", 1) is False
    assert client.is_connected() is False


def test_connect_sends_hello(harness):
    fake, make = harness
    client = connected(fake, make, get_hello_data=lambda: {"pid": 7})
    assert json.loads(fake.sent[0]) == make_event("hello", {"pid": 7})
    assert client.is_connected()


def test_hello_without_data_is_null(harness):
    fake, make = harness
    connected(fake, make)
    assert json.loads(fake.sent[0])["body"]["param"] is None


def test_connect_twice_keeps_one_connection(harness):
    fake, make = harness
    calls = []

    def connector(url):
        calls.append(url)
        return fake

    client = connected(fake, make, connector=connector)
    client.connect()
    time.sleep(0.05)
    assert calls == [URL]
    assert client.is_connected() is True


def test_remote_invoke_gets_response(harness):
    fake, make = harness
    client = connected(fake, make)
    client.register_function("add", lambda p, respond: respond(True, "", p["a"] + p["b"]))
    fake.push(make_invoke("id-1", "add", {"a": 1, "b": 2}))
    assert wait_for(lambda: len(fake.sent) == 2)
    assert json.loads(fake.sent[1]) == make_response("id-1", True, "", 3)


def test_invoke_function_round_trip(harness):
    fake, make = harness
    client = connected(fake, make)
    results = []
    client.invoke_function("echo", {"x": 1}, lambda *a: results.append(a))
    request = json.loads(fake.sent[1])
    assert request["type"] == "invoke"
    assert request["body"]["name"] == "echo"
    assert request["body"]["param"] == {"x": 1}
    fake.push(make_response(request["body"]["id"], True, "ok", {"y": 2}))
    assert wait_for(lambda: results)
    assert results == [(True, "ok", {"y": 2})]


def test_event_sent_and_received(harness):
    fake, make = harness
    client = connected(fake, make)
    received = []
    client.register_event("news", received.append)
    assert client.send_event("status", [1, 2]) is True
    assert json.loads(fake.sent[1]) == make_event("status", [1, 2])
    fake.push(make_event("news", "hi"))
    assert wait_for(lambda: received)
    assert received == ["hi"]


def test_undefined_event_handler(harness):
    fake, make = harness
    client = connected(fake, make)
    received = []
    client.set_undefined_event_handler(lambda name, param: received.append((name, param)))
    fake.push(make_event("mystery", 3))
    assert wait_for(lambda: received)
    assert received == [("mystery", 3)]


def test_ping_is_answered(harness):
    fake, make = harness
    connected(fake, make)
    fake.push({"type": "ping"})
    assert wait_for(lambda: len(fake.sent) == 2)
    assert fake.sent[1] == PONG_TEXT


def test_send_failure_fails_call(harness):
    fake, make = harness
    client = connected(fake, make)
    fake.fail_send = True
    results = []
    client.invoke_function("f", None, lambda *a: results.append(a))
    assert results == [(False, SEND_FAILED_MESSAGE, None)]
    assert client.send_event("e", None) is False


def test_heartbeat_ping_sent(harness):
    fake, make = harness
    clock = FakeClock()
    client = connected(fake, make, clock=clock, ping_interval=30.0, idle_timeout=1000.0)
    clock.now += 31
    assert wait_for(lambda: PING_TEXT in fake.sent)
    assert fake.sent[0] != PING_TEXT
    assert client.is_connected() is True


def test_idle_connection_is_dropped(harness):
    fake, make = harness
    clock = FakeClock()
    dropped = threading.Event()
    client = connected(
        fake,
        make,
        clock=clock,
        ping_interval=1000.0,
        idle_timeout=60.0,
        on_disconnect=lambda c: dropped.set(),
    )
    clock.now += 61
    assert dropped.wait(3.0)
    assert client.is_connected() is False
    assert fake.closed.is_set()


def test_unanswered_call_times_out(harness):
    fake, make = harness
    clock = FakeClock()
    client = connected(fake, make, clock=clock, call_timeout=30.0, idle_timeout=1000.0,
                       ping_interval=1000.0)
    results = []
    client.invoke_function("slow", None, lambda *a: results.append(a))
    clock.now += 31
    assert wait_for(lambda: results)
    assert results == [(False, TIMEOUT_MESSAGE, None)]


def test_disconnect_notifies(harness):
    fake, make = harness
    seen = []
    done = threading.Event()

    def on_disconnect(client):
        seen.append(client)
        done.set()

    client = connected(fake, make, on_disconnect=on_disconnect)
    client.disconnect()
    assert done.wait(3.0)
    assert seen == [client]
    assert client.is_connected() is False


def test_close_fails_waiting_calls(harness):
    fake, make = harness
    client = connected(fake, make)
    results = []
    client.invoke_function("f", None, lambda *a: results.append(a))
    client.close()
    assert results == [(False, TIMEOUT_MESSAGE, None)]
    with pytest.raises(RuntimeError):
        client.connect()


def test_connector_failure_notifies(harness):
    _, make = harness
    done = threading.Event()

    def connector(url):
        raise ConnectionRefusedError("refused")

    client = make(connector=connector, on_disconnect=lambda c: done.set())
    client.connect()
    assert done.wait(3.0)
    assert client.is_connected() is False