import asyncio
import base64
import contextlib
import json
from http import HTTPStatus

import pytest
from websockets.asyncio.server import serve

from rpcwire.base import (
    InvalidResponseError,
    NotificationStream,
    RpcError,
    TransportError,
)
from rpcwire.ws import WebSocket, batch_to_single, handle_message, parse_ws_url


@contextlib.asynccontextmanager
async def _server(handler, **kwargs):
    async with serve(handler, "127.0.0.1", 0, **kwargs) as server:
        port = server.sockets[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


# --- parse_ws_url ---


def test_parse_default_ws_port_and_root_resource():
    endpoint = parse_ws_url("ws://127.0.0.1")
    assert (endpoint.scheme, endpoint.host, endpoint.port, endpoint.resource) == ("ws", "127.0.0.1", 80, "/")
    assert endpoint.authorization is None


def test_parse_default_wss_port():
    assert parse_ws_url("wss://example.com/rpc").port == 443


def test_parse_keeps_path_and_query():
    endpoint = parse_ws_url("ws://example.com:8546/path/to?key=value")
    assert endpoint.port == 8546
    assert endpoint.resource == "/path/to?key=value"
    assert endpoint.uri == "ws://example.com:8546/path/to?key=value"


def test_parse_basic_auth():
    endpoint = parse_ws_url("ws://user:password@localhost:1234")
    expected = "Basic " + base64.b64encode(b"user:password").decode("ascii")
    assert endpoint.authorization == expected
    assert "password" not in endpoint.uri


def test_parse_wrong_scheme():
    with pytest.raises(TransportError) as info:
        parse_ws_url("http://127.0.0.1:3000")
    assert info.value == TransportError("Wrong scheme: http")


def test_parse_relative_url_fails():
    with pytest.raises(TransportError) as info:
        parse_ws_url("/just/a/path")
    assert info.value.message.startswith("failed to parse url")


def test_parse_missing_host():
    with pytest.raises(TransportError) as info:
        parse_ws_url("ws:///path")
    assert info.value == TransportError("Wrong host name")


# --- batch_to_single ---


def test_batch_to_single_returns_first_value():
    assert batch_to_single(["x", "y"]) == "x"


def test_batch_to_single_empty_is_invalid():
    with pytest.raises(InvalidResponseError) as info:
        batch_to_single([])
    assert info.value == InvalidResponseError("Expected single, got batch.")


def test_batch_to_single_raises_first_failure():
    with pytest.raises(RpcError) as info:
        batch_to_single([RpcError(-1, "boom")])
    assert info.value.code == -1


# --- handle_message ---


@pytest.mark.asyncio
async def test_handle_message_resolves_pending_request():
    future = asyncio.get_running_loop().create_future()
    pending = {1: future}
    handle_message(b'{"jsonrpc":"2.0","id":1,"result":"x"}', {}, pending)
    assert future.result() == ["x"]
    assert pending == {}


@pytest.mark.asyncio
async def test_handle_message_batch_uses_first_id():
    future = asyncio.get_running_loop().create_future()
    pending = {3: future}
    data = json.dumps(
        [
            {"jsonrpc": "2.0", "id": 3, "result": 1},
            {"jsonrpc": "2.0", "id": 4, "error": {"code": 5, "message": "bad"}},
        ]
    )
    handle_message(data, {}, pending)
    assert future.result() == [1, RpcError(5, "bad", None)]


@pytest.mark.asyncio
async def test_handle_message_unknown_id_leaves_pending():
    future = asyncio.get_running_loop().create_future()
    pending = {1: future}
    handle_message(b'{"jsonrpc":"2.0","id":7,"result":"x"}', {}, pending)
    assert not future.done()
    assert list(pending) == [1]


@pytest.mark.asyncio
async def test_handle_message_string_id_is_unsupported():
    future = asyncio.get_running_loop().create_future()
    pending = {1: future}
    handle_message(b'{"jsonrpc":"2.0","id":"1","result":"x"}', {}, pending)
    assert not future.done()
    assert list(pending) == [1]


@pytest.mark.asyncio
async def test_handle_message_garbage_answers_request_zero():
    future = asyncio.get_running_loop().create_future()
    pending = {0: future}
    handle_message(b"not json", {}, pending)
    assert future.result() == []
    assert pending == {}


@pytest.mark.asyncio
async def test_handle_message_notification_goes_to_stream():
    stream = NotificationStream()
    data = json.dumps(
        {"jsonrpc": "2.0", "method": "eth_subscription", "params": {"subscription": "0xab", "result": 42}}
    )
    handle_message(data, {"0xab": stream}, {})
    stream.close()
    assert [item async for item in stream] == [42]


# --- live connection ---


@pytest.mark.asyncio
async def test_should_send_a_request():
    received = []

    async def handler(connection):
        async for message in connection:
            received.append(message)
            await connection.send('{"jsonrpc":"2.0","id":1,"result":"x"}')

    async with _server(handler) as url:
        ws = await WebSocket.connect(url)
        try:
            result = await ws.execute("eth_accounts", ["1"])
        finally:
            await ws.close()
    assert result == "x"
    assert received == ['{"jsonrpc":"2.0","method":"eth_accounts","params":["1"],"id":1}']


@pytest.mark.asyncio
async def test_ids_increase_from_one():
    async def handler(connection):
        async for _ in connection:
            pass

    async with _server(handler) as url:
        ws = await WebSocket.connect(url)
        try:
            first, _ = ws.prepare("a", [])
            second, call = ws.prepare("b", [2])
        finally:
            await ws.close()
    assert (first, second) == (1, 2)
    assert call == {"jsonrpc": "2.0", "method": "b", "params": [2], "id": 2}


@pytest.mark.asyncio
async def test_batch_request():
    async def handler(connection):
        async for message in connection:
            calls = json.loads(message)
            outputs = [
                {"jsonrpc": "2.0", "id": calls[0]["id"], "result": {"test": 1}},
                {"jsonrpc": "2.0", "id": calls[1]["id"], "error": {"code": 7, "message": "nope"}},
            ]
            await connection.send(json.dumps(outputs))

    async with _server(handler) as url:
        ws = await WebSocket.connect(url)
        try:
            requests = [ws.prepare("eth_test", [1]), ws.prepare("eth_test", [2])]
            results = await ws.send_batch(requests)
        finally:
            await ws.close()
    assert results == [{"test": 1}, RpcError(7, "nope", None)]


@pytest.mark.asyncio
async def test_subscription_receives_notification():
    async def handler(connection):
        async for message in connection:
            call = json.loads(message)
            notification = {
                "jsonrpc": "2.0",
                "method": "eth_subscription",
                "params": {"subscription": "0x1", "result": "block"},
            }
            await connection.send(json.dumps(notification))
            await connection.send(json.dumps({"jsonrpc": "2.0", "id": call["id"], "result": True}))

    async with _server(handler) as url:
        ws = await WebSocket.connect(url)
        try:
            stream = ws.subscribe("0x1")
            assert await ws.execute("eth_ping", []) is True
            value = await asyncio.wait_for(stream.__anext__(), 5)
        finally:
            await ws.close()
    assert value == "block"


@pytest.mark.asyncio
async def test_basic_auth_header_is_sent():
    seen = []

    async def handler(connection):
        seen.append(connection.request.headers.get("Authorization"))
        async for message in connection:
            call = json.loads(message)
            await connection.send(json.dumps({"jsonrpc": "2.0", "id": call["id"], "result": 0}))

    async with _server(handler) as url:
        authed = url.replace("ws://127.0.0.1", "ws://user:password@localhost")
        ws = await WebSocket.connect(authed)
        try:
            assert await ws.execute("eth_blockNumber", []) == 0
        finally:
            await ws.close()
    assert seen == ["Basic " + base64.b64encode(b"user:password").decode("ascii")]


@pytest.mark.asyncio
async def test_rejected_handshake_reports_status():
    def reject(connection, request):
        return connection.respond(HTTPStatus.FORBIDDEN, "Forbidden\n")

    async def handler(connection):
        await connection.close()

    async with _server(handler, process_request=reject) as url:
        with pytest.raises(TransportError) as info:
            await WebSocket.connect(url)
    assert info.value.code == 403


@pytest.mark.asyncio
async def test_pending_request_fails_when_server_closes():
    async def handler(connection):
        await connection.recv()
        await connection.close()

    async with _server(handler) as url:
        ws = await WebSocket.connect(url)
        with pytest.raises(TransportError) as info:
            await asyncio.wait_for(ws.execute("eth_test", []), 5)
        await ws.close()
    assert info.value == TransportError("Cannot send request. Internal task finished.")


@pytest.mark.asyncio
async def test_requests_after_close_fail():
    async def handler(connection):
        async for _ in connection:
            pass

    async with _server(handler) as url:
        ws = await WebSocket.connect(url)
        await ws.close()
        with pytest.raises(TransportError) as send_info:
            await ws.send(*ws.prepare("eth_test", []))
        with pytest.raises(TransportError) as subscribe_info:
            ws.subscribe("0x1")
    assert send_info.value == TransportError("Cannot send request. Internal task finished.")
    assert subscribe_info.value == send_info.value