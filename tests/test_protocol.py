import json
import uuid

import pytest

from wsbridge.protocol import (
    FUNCTION_NOT_FOUND_MESSAGE,
    PONG_TEXT,
    TIMEOUT_MESSAGE,
    Codec,
    Dispatcher,
    PendingCalls,
    default_codec,
    format_call_id,
    make_event,
    make_invoke,
    make_response,
    set_cipher_function,
    set_log_function,
)


@pytest.fixture(autouse=True)
def reset_hooks():
    yield
    set_log_function(None)
    set_cipher_function(None, None)


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def recorder():
    calls = []

    def callback(success, message, data):
        calls.append((success, message, data))

    return calls, callback


def test_encode_is_compact_sorted_and_utf8():
    assert Codec().encode({"b": 1, "a": "中"}) == '{"a":"中","b":1}'


def test_codec_round_trip():
    codec = Codec()
    message = make_invoke("id", "name", {"list": [1, 2.5, None, True]})
    assert codec.decode(codec.encode(message)) == message


def test_decode_failure_logs_and_returns_none():
    lines = []
    set_log_function(lines.append)
    assert Codec().decode("{not json") is None
    assert lines and lines[0].startswith("Failed to parse message: ")


def test_global_cipher_is_applied():
    set_cipher_function(lambda s: s[::-1], lambda s: s[::-1])
    codec = default_codec()
    encoded = codec.encode({"type": "pong"})
    assert encoded == PONG_TEXT[::-1]
    assert codec.decode(encoded) == {"type": "pong"}


def test_explicit_cipher_overrides_global():
    set_cipher_function(lambda s: "x" + s, lambda s: s[1:])
    codec = Codec(str.upper, str.lower)
    assert codec.encode({"a": "b"}) == '{"A":"B"}'
    assert codec.decode('{"A":"B"}') == {"a": "b"}


def test_format_call_id_layout():
    value = uuid.UUID("0123abcd-4567-89ab-cdef-0123456789ab")
    assert format_call_id(value) == "0123ABCD-4567-89ab-CDEF-0123456789AB"


def test_format_call_id_fresh_ids_differ():
    first, second = format_call_id(), format_call_id()
    assert first != second
    assert [len(part) for part in first.split("-")] == [8, 4, 4, 4, 12]


def test_message_builders():
    assert make_event("hello", None) == {"type": "event", "body": {"name": "hello", "param": None}}
    assert make_invoke("1", "f", [1])["body"] == {"name": "f", "id": "1", "param": [1]}
    assert make_response("1", True, "ok", 2)["body"] == {
        "id": "1",
        "success": True,
        "message": "ok",
        "data": 2,
    }


def test_pending_resolve_runs_callback_once():
    pending = PendingCalls()
    calls, callback = recorder()
    call_id = pending.add(callback)
    assert len(pending) == 1
    assert pending.resolve(call_id, True, "ok", {"v": 1}) is True
    assert pending.resolve(call_id, True, "ok", {"v": 1}) is False
    assert calls == [(True, "ok", {"v": 1})]
    assert len(pending) == 0


def test_pending_ids_are_unique():
    pending = PendingCalls()
    ids = {pending.add(lambda *a: None) for _ in range(20)}
    assert len(ids) == 20


def test_pending_expire_uses_deadline():
    clock = FakeClock()
    pending = PendingCalls(timeout=30.0, clock=clock)
    calls, callback = recorder()
    pending.add(callback)
    clock.now += 10
    late_calls, late_callback = recorder()
    pending.add(late_callback)
    assert pending.expire(clock.now + 20) == 1
    assert calls == [(False, TIMEOUT_MESSAGE, None)]
    assert late_calls == []
    assert pending.expire(clock.now + 30) == 1
    assert late_calls == [(False, TIMEOUT_MESSAGE, None)]


def test_pending_fail_all():
    pending = PendingCalls()
    calls, callback = recorder()
    pending.add(callback)
    pending.add(callback)
    assert pending.fail_all("gone") == 2
    assert calls == [(False, "gone", None)] * 2
    assert len(pending) == 0


def test_dispatch_ping_replies_pong():
    sent = []
    dispatcher = Dispatcher(PendingCalls())
    assert dispatcher.handle('{"type":"ping"}', sent.append) == "ping"
    assert sent == [PONG_TEXT]


def test_dispatch_event_to_registered_proc():
    received = []
    dispatcher = Dispatcher(PendingCalls())
    dispatcher.register_event("greet", received.append)
    text = Codec().encode(make_event("greet", {"n": 1}))
    assert dispatcher.handle(text, lambda t: None) == "event"
    assert received == [{"n": 1}]


def test_dispatch_unknown_event_goes_to_undefined_handler():
    received = []
    dispatcher = Dispatcher(PendingCalls())
    dispatcher.set_undefined_event_handler(lambda name, param: received.append((name, param)))
    dispatcher.handle(Codec().encode(make_event("other", 5)), lambda t: None)
    assert received == [("other", 5)]


def test_dispatch_invoke_sends_response():
    sent = []
    codec = Codec()
    dispatcher = Dispatcher(PendingCalls(), codec)
    dispatcher.register_function(
        "add", lambda param, respond: respond(True, "", param["a"] + param["b"])
    )
    dispatcher.handle(codec.encode(make_invoke("c1", "add", {"a": 2, "b": 3})), sent.append)
    assert [codec.decode(t) for t in sent] == [make_response("c1", True, "", 5)]


def test_dispatch_invoke_missing_function():
    sent = []
    codec = Codec()
    dispatcher = Dispatcher(PendingCalls(), codec)
    dispatcher.handle(codec.encode(make_invoke("c2", "nope", None)), sent.append)
    assert codec.decode(sent[0]) == make_response("c2", False, FUNCTION_NOT_FOUND_MESSAGE, None)


def test_dispatch_invoke_undefined_function_handler_with_extra_args():
    seen = []
    sent = []
    codec = Codec()
    dispatcher = Dispatcher(PendingCalls(), codec)

    def handler(name, client_id, param, respond):
        seen.append((name, client_id, param))
        respond(True, "handled", None)

    dispatcher.set_undefined_function_handler(handler)
    dispatcher.handle(codec.encode(make_invoke("c3", "dyn", [1])), sent.append, "client-a")
    assert seen == [("dyn", "client-a", [1])]
    assert codec.decode(sent[0])["body"]["message"] == "handled"


def test_dispatch_response_resolves_pending():
    pending = PendingCalls()
    calls, callback = recorder()
    call_id = pending.add(callback)
    codec = Codec()
    dispatcher = Dispatcher(pending, codec)
    kind = dispatcher.handle(codec.encode(make_response(call_id, True, "ok", [1])), lambda t: None)
    assert kind == "response"
    assert calls == [(True, "ok", [1])]
    assert len(pending) == 0


def test_dispatch_ignores_bad_input():
    sent = []
    lines = []
    set_log_function(lines.append)
    dispatcher = Dispatcher(PendingCalls())
    assert dispatcher.handle("garbage", sent.append) is None
    assert dispatcher.handle('{"type":"event"}', sent.append) is None
    assert dispatcher.handle('{"type":"weird","body":{}}', sent.append) is None
    assert sent == []
    assert "Message body is null" in lines
    assert "Unknown message type: weird" in lines