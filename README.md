# rpcwire

This package provides asyncio JSON-RPC 2.0 transports for talking to Ethereum-style nodes:

- `rpcwire.http.Http` sends one HTTP POST per call or per batch, using `httpx`.
- `rpcwire.ws.WebSocket` keeps one persistent WebSocket connection open, using `websockets`. It supports batches and subscriptions.
- `rpcwire.ipc.Ipc` talks over a Unix domain socket. It supports batches and subscriptions.
- `rpcwire.batch.Batch` collects calls made through any batch-capable transport and sends them together.
- `rpcwire.mock_transport.MockTransport` is an in-memory, scripted transport for testing code that makes RPC calls.

The shared interfaces live in `rpcwire.base`: `Transport`, `BatchTransport`, `DuplexTransport` and `NotificationStream`. That module also has the error classes and helpers such as `build_request` and `to_result_from_output`.

## Installation

```
pip install rpcwire
```

## Making calls

A call goes through two steps:

1. `prepare(method, params)` assigns a request id and builds the JSON-RPC call object.
2. `send(id, request)` returns an awaitable that yields the call's result.

`execute(method, params)` does both steps at once:

```python
import asyncio
from rpcwire.http import Http

async def main():
    async with Http("http://localhost:8545") as node:
        accounts = await node.execute("eth_accounts", [])
        print(accounts)

asyncio.run(main())
```

`Http` creates its own `httpx.AsyncClient` and closes it in `aclose()` or when the `async with` block exits. If you pass a client with `Http(url, client=...)`, that client is left open for you to close.

## Errors

If the node answers with a JSON-RPC error object, the call raises `rpcwire.base.RpcError`, which carries `code`, `message` and `data`. The other failures are:

- `TransportError`: network failures, an unusable URL, or an HTTP or handshake status code, which is kept in `code`.
- `InvalidResponseError`: a reply that is malformed or does not match the request.
- `InternalError`: a batched call whose slot in the batch response was missing.
- `UnreachableError`: `MockTransport` received a call when it had no response queued.

All of these derive from `rpcwire.base.TransportFailure`.

## Batches

`send_batch(requests)` takes an iterable of `(id, request)` pairs from `prepare`. It returns one entry per request, in request order. Each entry is either the call's result or the `TransportFailure` that call ended with. For `Http`, responses that come back out of order are put back in request order by id.

`Batch` lets code that issues single calls have them sent as one batch:

```python
from rpcwire.batch import Batch

batch = Batch(node)
block = asyncio.ensure_future(batch.execute("eth_blockNumber", []))
balance = asyncio.ensure_future(batch.execute("eth_getBalance", ["0x00", "latest"]))
await asyncio.sleep(0)          # let both calls queue up
results = await batch.submit_batch()
print(await block, await balance)
```

Each queued call resolves to its own slot of the batch response. If the whole batch fails, every queued call raises that error, and so does `submit_batch()`.

## Subscriptions

`WebSocket` and `Ipc` deliver `eth_subscription` notifications to a `NotificationStream`, which is an async iterator:

```python
from rpcwire.ws import WebSocket

ws = await WebSocket.connect("ws://localhost:8546")
sub_id = await ws.execute("eth_subscribe", ["newHeads"])
stream = ws.subscribe(sub_id)
async for head in stream:
    print(head["number"])
```

Notifications that arrive for an id before `subscribe(id)` has been called are logged and dropped. Calling `ws.unsubscribe(sub_id)` ends the stream. `await ws.close()` closes the connection and ends every open stream.

A WebSocket URL must use `ws://` or `wss://`. It may carry basic credentials, for example `ws://user:password@localhost:8546`, which are sent as an `Authorization` header.

To use a local node socket, call `await Ipc.connect(path)`. If you already have asyncio streams, use `Ipc.from_streams(reader, writer)`. `await ipc.close()` stops accepting new calls and waits until the pending ones are answered.

## Testing your code

```python
from rpcwire.mock_transport import MockTransport

mock = MockTransport()
mock.set_response("0x10")
assert await mock.execute("eth_blockNumber", []) == "0x10"
mock.assert_request("eth_blockNumber", [])
mock.assert_no_more_requests()
```

`assert_request` compares the params as JSON-encoded strings, for example `['"latest"']`. It raises `AssertionError` on a mismatch.

## What it does not do

- There is no command-line tool.
- There is no transport that switches between two underlying transports.
- There is no node-level API; you pass method names and params yourself.
- The WebSocket and IPC transports do not reconnect. Once the connection ends, pending calls fail with `TransportError` and new calls are refused.
- `Http` has no subscriptions.