# wsbridge

wsbridge connects programs with JSON messages sent over WebSocket. Either side can fire
named **events** at the other side. Either side can also **invoke** named functions on
the other side. Replies come back through a callback that receives
`(success, message, data)`.

The package has two layers:

- `wsbridge.protocol`, `wsbridge.client`, `wsbridge.server` and `wsbridge.extend` make up
  the message bridge. Its network I/O uses the `websockets` library.
- `wsbridge.frames`, `wsbridge.closing` and `wsbridge.connection` form a sans-IO engine
  for the WebSocket framing layer. It never touches a socket.

Install with `pip install .`. Use `pip install .[test]` to run the tests with pytest.

## Message format

Every message is a JSON object with a `type` field:

- `event`: `{"type": "event", "body": {"name": ..., "param": ...}}`
- `invoke`: `{"type": "invoke", "body": {"name": ..., "id": ..., "param": ...}}`
- `response`: `{"type": "response", "body": {"id": ..., "success": ..., "message": ..., "data": ...}}`
- `ping` / `pong`: heartbeats. A received `ping` is answered with `{"type":"pong"}` at once.

`wsbridge.protocol` holds the pieces both sides share:

- `make_event`, `make_invoke` and `make_response` build the messages above.
- `Codec` writes compact JSON with sorted keys and raw UTF-8 text, and parses it back.
  `Codec.decode` logs a parse error and returns `None`.
- `set_cipher_function(encode_func, decode_func)` installs a transformation that is applied
  to every outgoing and incoming text. `set_log_function(log_func)` installs a logger.
  Passing `None` restores the default: no change to the text, and no logging.
- `format_call_id` formats a UUID as a call id. With no argument it formats a fresh random one.
- `PendingCalls` keeps the callbacks that are waiting for responses. Each has a deadline,
  30 seconds by default. `expire` fails calls whose deadline has passed, `fail_all` fails
  every waiting call, and `resolve` completes one call.
- `Dispatcher` sends each received text to the registered functions and events. It replies
  to an invoke of an unknown function with a failure, unless an undefined-function handler
  is set.

The failure messages are the module constants `TIMEOUT_MESSAGE`, `NOT_CONNECTED_MESSAGE`,
`SEND_FAILED_MESSAGE`, `FUNCTION_NOT_FOUND_MESSAGE` and `CLIENT_NOT_FOUND_MESSAGE`.

## Client

```python
from wsbridge.client import Client

def hello():
    return {"platform": "demo", "version": "1.0"}

client = Client("ws://127.0.0.1:5555/Extend", hello, lambda c: c.connect())

def add(param, respond):
    respond(True, "", param["a"] + param["b"])

client.register_function("add", add)
client.register_event("notice", lambda param: print("notice:", param))
client.connect()

client.invoke_function("status", {}, lambda ok, msg, data: print(ok, msg, data))
client.send_event("progress", {"percent": 50})
client.close()
```

`connect()` connects in a background thread. When the connection opens, the client sends a
`hello` event that carries the value returned by the hello callback. The third argument,
`on_disconnect(client)`, is called whenever a connection attempt fails or a connection ends,
as long as the client has not been closed.

A background thread does three things:

- It fails calls that got no answer within `call_timeout` seconds.
- It sends a `ping` when `ping_interval` seconds (default 30) have passed since the last one.
- It disconnects when `idle_timeout` seconds (default 60) have passed with nothing received.

`Client` is also a context manager that closes itself on exit. The `connector` keyword
takes a callable that opens the connection. The default uses `websockets`; you can supply
any object with `send`, `recv` and `close`.

## Server

```python
from wsbridge.server import Server

def on_connect(path):
    return path.rsplit("/", 1)[-1]   # client id; an empty string refuses the connection

server = Server(5555, on_connect, lambda client_id: print("gone", client_id))
server.register_event("hello", lambda client_id, param: print(client_id, param))
server.register_function("echo", lambda client_id, param, respond: respond(True, "", param))
server.start()

server.send_event("some-client", "notice", {"text": "hi"})
server.broadcast_event("notice", {"text": "hi"})
server.invoke_function("some-client", "add", {"a": 1, "b": 2},
                       lambda ok, msg, data: print(ok, msg, data))
server.close()
```

- `on_connect` receives the request path of each new connection.
- The server listens on `127.0.0.1` by default; pass `host=` to change it.
- `start()` returns `False` if it cannot listen. After a successful start, `get_port()`
  reports the port that was bound.
- `disconnect_client(client_id)` drops one client, and `client_ids` lists the clients
  that are connected.
- `stop()` closes every connection. `close()` also ends the background work and fails
  any waiting calls.

## Extension helper

`wsbridge.extend.Extension` runs two clients side by side:

- A working client, connected to the URL given to `initialize`. It reconnects after a short
  delay whenever its connection drops.
- A test client for `ws://127.0.0.1:5555/Extend`. A watcher connects it every
  `check_interval` seconds (default 5) while testing is switched on. By default, testing is
  on while a file named `Extend_Test_Enable_Mutex` exists in the system temporary directory.

Both clients send a hello that holds the platform, the version, the process id and the
result of the `hello_data` callback. Registered functions and events, and sent events, go
to both clients. `invoke_function` uses the working client only.

```python
from wsbridge.extend import Extension

ext = Extension()
ext.initialize("ws://127.0.0.1:6000/Work", "demo", "1.0", lambda: {"user": "demo"})
ext.connect()
ext.send_event("ready", {})
ext.uninitialize()
```

The package also installs a demonstration command, which only prints a greeting:

```
wsbridge-extend
```

## Frame engine

- `wsbridge.frames` encodes frames (`encode_frame`, `split_message`, `mask_payload`) and
  decodes them one step at a time (`FrameParser`).
- `wsbridge.closing` holds close codes, close-code validation and CLOSE payloads.
- `wsbridge.connection.Connection` is the connection state machine. It covers ready
  states, fragmentation, ping and pong, heartbeats and the closing handshake with its timeout.

```python
from wsbridge.connection import Connection

conn = Connection()              # mask=True for the client side
conn.open()
conn.send_text("hello")
wire = conn.data_to_send()       # bytes to write to the transport
messages = conn.receive_data(b"\x81\x02hi")  # -> [Message(kind=TEXT, data=b"hi", ...)]
conn.close()
delay = conn.poll()              # runs timers; seconds until the next poll, or None
```

## What it does not do

- The frame engine does not perform the HTTP opening handshake. `Connection.open()` only
  marks it as done.
- The frame engine does not support per-message compression. A frame with the compression
  bit set is rejected as a protocol error.
- The client and server do not run on the frame engine. They use the `websockets` library
  for their connections.