import json

import httpx
import pytest

from rpcwire.base import InvalidResponseError, RpcError, TransportError
from rpcwire.http import (
    Http,
    handle_batch_response,
    handle_possible_error_object_for_batched_request,
)

URL = "http://127.0.0.1:8545"


def make_transport(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Http(URL, client)


def replying(status, text):
    return lambda request: httpx.Response(status, text=text)


def refusing(request):
    raise httpx.ConnectError("refused", request=request)


@pytest.mark.asyncio
async def test_should_make_a_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(method=request.method, path=request.url.path, body=request.content.decode())
        return httpx.Response(200, text='{"jsonrpc":"2.0","id":0,"result":"x"}')

    result = await make_transport(handler).execute("eth_getAccounts", [])

    assert result == "x"
    assert seen == {
        "method": "POST",
        "path": "/",
        "body": '{"jsonrpc":"2.0","method":"eth_getAccounts","params":[],"id":0}',
    }


@pytest.mark.asyncio
async def test_catch_generic_json_error_for_batched_request():
    body = """{
        "jsonrpc":"2.0",
        "error":{
            "code":0,
            "message":"we can't execute this request"
        },
        "id":null
    }"""
    transport = make_transport(replying(200, body))
    with pytest.raises(RpcError) as info:
        await transport.send_batch([transport.prepare("some_method", [])])
    assert info.value == RpcError(0, "we can't execute this request", None)


def test_handles_batch_response_being_in_different_order_than_input():
    outputs = [{"result": i, "id": i} for i in (1, 0, 2)]
    assert handle_batch_response([0, 1, 2], outputs) == [0, 1, 2]


def test_prepare_assigns_increasing_ids_from_zero():
    transport = Http(URL, httpx.AsyncClient())
    assert transport.prepare("a", [1]) == (0, {"jsonrpc": "2.0", "method": "a", "params": [1], "id": 0})
    assert transport.prepare("b", [])[0] == 1


def test_invalid_url_is_transport_error():
    with pytest.raises(TransportError) as info:
        Http("not a url")
    assert info.value.message.startswith("failed to parse url")


@pytest.mark.parametrize(
    "handler, error_type, check",
    [
        (replying(500, "oops"), TransportError, lambda err: err.code == 500),
        (
            replying(200, "{nope"),
            TransportError,
            lambda err: err.message.startswith("failed to deserialize response") and err.message.endswith("{nope"),
        ),
        (refusing, TransportError, lambda err: err.message.startswith("failed to send request")),
        (
            replying(200, '{"jsonrpc":"2.0","id":0,"error":{"code":-32000,"message":"bad","data":"more"}}'),
            RpcError,
            lambda err: err == RpcError(-32000, "bad", "more"),
        ),
    ],
    ids=["status", "unparseable", "connection", "rpc_error"],
)
@pytest.mark.asyncio
async def test_single_request_failures(handler, error_type, check):
    with pytest.raises(error_type) as info:
        await make_transport(handler).execute("m", [])
    assert check(info.value)


@pytest.mark.asyncio
async def test_batch_request_body_and_mixed_results():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=[
                {"jsonrpc": "2.0", "id": 1, "error": {"code": 5, "message": "no"}},
                {"jsonrpc": "2.0", "id": 0, "result": "ok"},
            ],
        )

    transport = make_transport(handler)
    requests = [transport.prepare("a", []), transport.prepare("b", [True])]
    results = await transport.send_batch(requests)

    assert seen["body"] == [
        {"jsonrpc": "2.0", "method": "a", "params": [], "id": 0},
        {"jsonrpc": "2.0", "method": "b", "params": [True], "id": 1},
    ]
    assert results == ["ok", RpcError(5, "no", None)]


def test_success_object_for_batch_is_invalid():
    with pytest.raises(InvalidResponseError):
        handle_possible_error_object_for_batched_request({"jsonrpc": "2.0", "id": 1, "result": 3})


def test_batch_list_is_returned_unchanged():
    outputs = [{"id": 1, "result": 3}]
    assert handle_possible_error_object_for_batched_request(outputs) == outputs


@pytest.mark.parametrize(
    "ids, outputs, message",
    [
        ([0, 1], [{"id": 0, "result": 1}], "unexpected number of responses"),
        ([0, 2], [{"id": 0, "result": 1}, {"id": 1, "result": 2}], "batch response is missing id 2"),
        ([0], [{"id": "0", "result": 1}], "response id is not u64"),
    ],
)
def test_batch_response_errors(ids, outputs, message):
    with pytest.raises(InvalidResponseError) as info:
        handle_batch_response(ids, outputs)
    assert info.value == InvalidResponseError(message)


@pytest.mark.asyncio
async def test_context_manager_closes_owned_client():
    async with Http(URL) as transport:
        assert transport.prepare("m", [])[0] == 0
    assert transport._client.is_closed