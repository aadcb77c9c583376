"""A transport talking JSON-RPC over a WebSocket connection."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import itertools
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Union
from urllib.parse import urlsplit

from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidStatus,
    WebSocketException,
)

from .base import (
    BatchTransport,
    DuplexTransport,
    InvalidResponseError,
    NotificationStream,
    TransportError,
    to_json,
    to_results_from_outputs,
)

log = logging.getLogger(__name__)

_NOTIFICATION_KEYS = frozenset({"jsonrpc", "method", "params"})
_INVALID = object()


@dataclass(frozen=True)
class _Endpoint:
    scheme: str
    host: str
    port: int
    resource: str
    authorization: str | None = None

    @property
    def uri(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.scheme}://{host}:{self.port}{self.resource}"


@dataclass
class _Request:
    id: int
    text: str
    future: asyncio.Future[Any]


@dataclass
class _Subscribe:
    id: str
    stream: NotificationStream


@dataclass
class _Unsubscribe:
    id: str


_Message = Union[_Request, _Subscribe, _Unsubscribe]


def _dropped_error() -> TransportError:
    return TransportError("Cannot send request. Internal task finished.")


def _fail(future: asyncio.Future[Any], error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)


async def _raise(error: BaseException) -> Any:
    raise error


def parse_ws_url(url: str) -> _Endpoint:
    """Split a ``ws://`` or ``wss://`` URL into what the handshake needs."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as err:
        raise TransportError(f"failed to parse url: {err}") from err
    if not parts.scheme:
        raise TransportError("failed to parse url: relative URL without a base")
    scheme = parts.scheme
    if scheme not in ("ws", "wss"):
        raise TransportError(f"Wrong scheme: {scheme}")
    host = parts.hostname
    if not host:
        raise TransportError("Wrong host name")
    if port is None:
        port = 80 if scheme == "ws" else 443
    resource = parts.path or "/"
    if parts.query:
        resource = f"{resource}?{parts.query}"
    authorization = None
    if parts.password:
        credentials = f"{parts.username or ''}:{parts.password}".encode("utf-8")
        authorization = "Basic " + base64.b64encode(credentials).decode("ascii")
    return _Endpoint(scheme, host, port, resource, authorization)


def _is_notification(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("method"), str)
        and set(value) <= _NOTIFICATION_KEYS
    )


def _valid_id(value: Any) -> bool:
    if value is None or isinstance(value, str):
        return True
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _is_output(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and "id" in value
        and _valid_id(value["id"])
        and (("result" in value) != ("error" in value))
    )


def _as_outputs(value: Any) -> list[Any]:
    if isinstance(value, dict):
        return [value] if _is_output(value) else []
    if isinstance(value, list) and all(_is_output(item) for item in value):
        return value
    return []


def handle_message(
    data: bytes | str,
    subscriptions: dict[str, NotificationStream],
    pending: dict[int, asyncio.Future[Any]],
) -> None:
    """Route one received message to a subscription stream or a pending request."""
    log.debug("Message received: %r", data)
    try:
        value = json.loads(data)
    except ValueError:
        value = _INVALID

    if _is_notification(value):
        params = value.get("params")
        if not isinstance(params, dict):
            return
        subscription = params.get("subscription")
        if not isinstance(subscription, str) or "result" not in params:
            log.error("Got unsupported notification (id: %r)", subscription)
            return
        stream = subscriptions.get(subscription)
        if stream is None:
            log.warning("Got notification for unknown subscription (id: %r)", subscription)
            return
        try:
            stream.push(params["result"])
        except TransportError as err:
            log.error("Error sending notification: %s (id: %r)", err, subscription)
        return

    outputs = _as_outputs(value)
    response_id = outputs[0]["id"] if outputs else 0
    if not isinstance(response_id, int) or isinstance(response_id, bool):
        log.warning("Got unsupported response (id: %r)", response_id)
        return
    future = pending.pop(response_id, None)
    if future is None:
        log.warning("Got response for unknown request (id: %r)", response_id)
        return
    if future.done():
        log.warning("Sending a response to a finished request (id: %r)", response_id)
        return
    log.debug("Responding to (id: %r) with %r", response_id, outputs)
    future.set_result(to_results_from_outputs(outputs))


def batch_to_single(response: Any) -> Any:
    """Return the first result of a batch response, raising it if it failed."""
    if isinstance(response, BaseException):
        raise response
    if not response:
        raise InvalidResponseError("Expected single, got batch.")
    first = response[0]
    if isinstance(first, BaseException):
        raise first
    return first


async def _open(endpoint: _Endpoint) -> ClientConnection:
    headers = {"Authorization": endpoint.authorization} if endpoint.authorization else None
    log.debug("Connecting websocket client with host: %s and resource: %s", endpoint.host, endpoint.resource)
    try:
        return await ws_connect(
            endpoint.uri,
            additional_headers=headers,
            max_size=None,
            compression=None,
        )
    except InvalidStatus as err:
        raise TransportError(code=err.response.status_code) from err
    except InvalidHandshake as err:
        raise TransportError(f"Handshake Error: {err!r}") from err
    except WebSocketException as err:
        raise TransportError(f"Connection Error: {err!r}") from err
    except OSError as err:
        raise TransportError(f"Connection Error: {err}") from err


class WebSocket(BatchTransport, DuplexTransport):
    """Sends calls over a WebSocket and delivers responses and notifications.

    A background task owns the connection until it closes or ``close`` is called.
    """

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection
        self._loop = asyncio.get_running_loop()
        self._ids = itertools.count(1)
        self._messages: asyncio.Queue[_Message] = asyncio.Queue()
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscriptions: dict[str, NotificationStream] = {}
        self._accepting = True
        self._task = self._loop.create_task(self._run())

    def __repr__(self) -> str:
        return f"WebSocket(uri={self._connection.request.path if self._connection.request else None!r})"

    @classmethod
    async def connect(cls, url: str) -> WebSocket:
        """Open a WebSocket connection to ``url``."""
        endpoint = parse_ws_url(url)
        connection = await _open(endpoint)
        return cls(connection)

    async def __aenter__(self) -> WebSocket:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def prepare(self, method: str, params: list[Any]) -> tuple[int, dict[str, Any]]:
        request_id = next(self._ids)
        return request_id, {"jsonrpc": "2.0", "method": method, "params": list(params), "id": request_id}

    def send(self, id: int, request: dict[str, Any]):
        try:
            future = self._send_request(id, request)
        except TransportError as err:
            return _raise(err)
        return self._await_single(future)

    def send_batch(self, requests: Iterable[tuple[int, dict[str, Any]]]):
        pairs = list(requests)
        batch_id = pairs[0][0] if pairs else 0
        calls = [call for _, call in pairs]
        try:
            future = self._send_request(batch_id, calls)
        except TransportError as err:
            return _raise(err)
        return self._await_batch(future)

    def subscribe(self, id: str) -> NotificationStream:
        stream = NotificationStream()
        self._post(_Subscribe(id, stream))
        return stream

    def unsubscribe(self, id: str) -> None:
        self._post(_Unsubscribe(id))

    async def close(self) -> None:
        """Close the connection and stop the background task."""
        self._accepting = False
        await self._connection.close()
        await self._task

    def _post(self, message: _Message) -> None:
        if not self._accepting or self._task.done():
            raise _dropped_error()
        self._messages.put_nowait(message)

    def _send_request(self, request_id: int, request: Any) -> asyncio.Future[Any]:
        text = to_json(request)
        log.debug("[%s] Calling: %s", request_id, text)
        future = self._loop.create_future()
        self._post(_Request(request_id, text, future))
        return future

    @staticmethod
    async def _await_single(future: asyncio.Future[Any]) -> Any:
        return batch_to_single(await future)

    @staticmethod
    async def _await_batch(future: asyncio.Future[Any]) -> list[Any]:
        return await future

    async def _run(self) -> None:
        writer = self._loop.create_task(self._write_loop())
        try:
            await self._read_loop()
        finally:
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
            self._shutdown()

    async def _read_loop(self) -> None:
        while True:
            try:
                data = await self._connection.recv()
            except ConnectionClosedOK:
                log.debug("WS connection closed")
                return
            except ConnectionClosed as err:
                log.error("WS connection error: %r", err)
                return
            handle_message(data, self._subscriptions, self._pending)

    async def _write_loop(self) -> None:
        while True:
            message = await self._messages.get()
            if isinstance(message, _Subscribe):
                replaced = self._subscriptions.get(message.id)
                if replaced is not None:
                    log.warning("Replacing already-registered subscription with id %r", message.id)
                    replaced.close()
                self._subscriptions[message.id] = message.stream
            elif isinstance(message, _Unsubscribe):
                removed = self._subscriptions.pop(message.id, None)
                if removed is None:
                    log.warning("Unsubscribing from non-existent subscription with id %r", message.id)
                else:
                    removed.close()
            else:
                await self._write_request(message)

    async def _write_request(self, request: _Request) -> None:
        replaced = self._pending.get(request.id)
        if replaced is not None:
            log.warning("Replacing a pending request with id %r", request.id)
            _fail(replaced, _dropped_error())
        self._pending[request.id] = request.future
        try:
            await self._connection.send(request.text)
        except (ConnectionClosed, OSError) as err:
            log.error("WS connection error: %r", err)
            if self._pending.get(request.id) is request.future:
                del self._pending[request.id]
            _fail(request.future, _dropped_error())

    def _shutdown(self) -> None:
        self._accepting = False
        while True:
            try:
                message = self._messages.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(message, _Request):
                _fail(message.future, _dropped_error())
            elif isinstance(message, _Subscribe):
                message.stream.close()
        for future in self._pending.values():
            _fail(future, _dropped_error())
        self._pending.clear()
        for stream in self._subscriptions.values():
            stream.close()
        self._subscriptions.clear()