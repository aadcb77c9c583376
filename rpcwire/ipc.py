"""A transport talking JSON-RPC over a Unix domain socket."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Union

from .base import (
    BatchTransport,
    DuplexTransport,
    NotificationStream,
    TransportError,
    TransportFailure,
    build_request,
    to_json,
    to_result_from_output,
)

log = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024
_DECODER = json.JSONDecoder()
_WHITESPACE = re.compile(r"[ \t\n\r]*")
_NOTIFICATION_KEYS = frozenset({"jsonrpc", "method", "params"})


@dataclass
class _Request:
    id: int
    call: dict[str, Any]
    future: asyncio.Future[Any]


@dataclass
class _Write:
    requests: list[_Request]
    batch: bool


@dataclass
class _Subscribe:
    id: str
    stream: NotificationStream


@dataclass
class _Unsubscribe:
    id: str


_Message = Union[_Write, _Subscribe, _Unsubscribe]


def _send_error() -> TransportError:
    return TransportError("Send Error: transport task finished")


def _recv_error() -> TransportError:
    return TransportError("Recv Error: response channel closed")


def _fail(future: asyncio.Future[Any], error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)


def _decode_prefix(buffer: bytearray) -> str:
    """Decode the longest valid UTF-8 prefix of the buffer."""
    data = bytes(buffer)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as err:
        return data[: err.start].decode("utf-8")


def _is_notification(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("method"), str)
        and set(value) <= _NOTIFICATION_KEYS
    )


def _is_output(value: Any) -> bool:
    return isinstance(value, dict) and "id" in value and (("result" in value) != ("error" in value))


def _as_outputs(value: Any) -> list[Any] | None:
    if isinstance(value, dict):
        return [value] if _is_output(value) else None
    if isinstance(value, list) and all(_is_output(item) for item in value):
        return value
    return None


class Ipc(BatchTransport, DuplexTransport):
    """Sends calls over a stream connection and delivers responses and notifications.

    A background task owns the connection; it keeps running until the
    connection ends, or until ``close`` is called and every pending call has
    been answered.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._loop = asyncio.get_running_loop()
        self._ids = itertools.count(1)
        self._messages: asyncio.Queue[_Message | None] = asyncio.Queue()
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscriptions: dict[str, NotificationStream] = {}
        self._accepting = True
        self._task = self._loop.create_task(self._run())

    @classmethod
    async def connect(cls, path: str | os.PathLike[str]) -> Ipc:
        """Connect to the Unix domain socket at ``path``."""
        try:
            reader, writer = await asyncio.open_unix_connection(os.fspath(path))
        except OSError as err:
            raise TransportError(f"failed to connect to {os.fspath(path)}: {err}") from err
        return cls.from_streams(reader, writer)

    @classmethod
    def from_streams(cls, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> Ipc:
        """Run the transport over an already open connection."""
        return cls(reader, writer)

    async def __aenter__(self) -> Ipc:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def prepare(self, method: str, params: list[Any]) -> tuple[int, dict[str, Any]]:
        request_id = next(self._ids)
        return request_id, build_request(request_id, method, params)

    def send(self, id: int, request: dict[str, Any]):
        future = self._loop.create_future()
        try:
            self._post(_Write([_Request(id, request, future)], batch=False))
        except TransportError as err:
            future.set_exception(err)
        return self._await_single(future)

    def send_batch(self, requests: Iterable[tuple[int, dict[str, Any]]]):
        pending = [_Request(request_id, call, self._loop.create_future()) for request_id, call in requests]
        futures = [request.future for request in pending]
        try:
            self._post(_Write(pending, batch=True))
        except TransportError as err:
            return self._await_batch(futures, err)
        return self._await_batch(futures, None)

    def subscribe(self, id: str) -> NotificationStream:
        stream = NotificationStream()
        self._post(_Subscribe(id, stream))
        return stream

    def unsubscribe(self, id: str) -> None:
        self._post(_Unsubscribe(id))

    async def close(self) -> None:
        """Stop accepting calls and wait for the pending ones to be answered."""
        if self._accepting:
            self._accepting = False
            self._messages.put_nowait(None)
        await self._task

    def _post(self, message: _Message) -> None:
        if not self._accepting:
            raise _send_error()
        self._messages.put_nowait(message)

    @staticmethod
    async def _await_single(future: asyncio.Future[Any]) -> Any:
        return to_result_from_output(await future)

    @staticmethod
    async def _await_batch(
        futures: list[asyncio.Future[Any]], failure: TransportError | None
    ) -> list[Any]:
        if failure is not None:
            for future in futures:
                future.cancel()
            raise failure
        results: list[Any] = []
        for future in futures:
            try:
                results.append(to_result_from_output(await future))
            except TransportFailure as err:
                results.append(err)
        return results

    async def _run(self) -> None:
        buffer = bytearray()
        closed = False
        incoming: asyncio.Future[Any] | None = None
        reading: asyncio.Future[bytes] | None = None
        try:
            while not closed or self._pending:
                if incoming is None and not closed:
                    incoming = asyncio.ensure_future(self._messages.get())
                if reading is None:
                    reading = asyncio.ensure_future(self._reader.read(_READ_SIZE))
                waiting = {task for task in (incoming, reading) if task is not None}
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if incoming is not None and incoming in done:
                    message, incoming = incoming.result(), None
                    if message is None:
                        closed = True
                    else:
                        await self._dispatch(message)
                if reading is not None and reading in done:
                    task, reading = reading, None
                    try:
                        data = task.result()
                    except OSError as err:
                        log.error("IPC read error: %r", err)
                        break
                    if not data:
                        break
                    buffer.extend(data)
                    self._consume(buffer)
        finally:
            if incoming is not None:
                if incoming.done() and not incoming.cancelled():
                    self._discard(incoming.result())
                else:
                    incoming.cancel()
            if reading is not None:
                reading.cancel()
            self._shutdown()
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError:
                pass

    def _shutdown(self) -> None:
        self._accepting = False
        while True:
            try:
                message = self._messages.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._discard(message)
        for future in self._pending.values():
            _fail(future, _recv_error())
        self._pending.clear()
        for stream in self._subscriptions.values():
            stream.close()
        self._subscriptions.clear()

    @staticmethod
    def _discard(message: _Message | None) -> None:
        if isinstance(message, _Write):
            for request in message.requests:
                _fail(request.future, _recv_error())
        elif isinstance(message, _Subscribe):
            message.stream.close()

    async def _dispatch(self, message: _Message) -> None:
        if isinstance(message, _Subscribe):
            replaced = self._subscriptions.get(message.id)
            if replaced is not None:
                log.warning("Replacing a subscription with id %r", message.id)
                replaced.close()
            self._subscriptions[message.id] = message.stream
        elif isinstance(message, _Unsubscribe):
            removed = self._subscriptions.pop(message.id, None)
            if removed is None:
                log.warning("Unsubscribing not subscribed id %r", message.id)
            else:
                removed.close()
        else:
            await self._write_requests(message)

    async def _write_requests(self, message: _Write) -> None:
        for request in message.requests:
            replaced = self._pending.get(request.id)
            if replaced is not None:
                log.warning("Replacing a pending request with id %r", request.id)
                _fail(replaced, _recv_error())
            self._pending[request.id] = request.future
        payload: Any = (
            [request.call for request in message.requests] if message.batch else message.requests[0].call
        )
        try:
            self._writer.write(to_json(payload).encode("utf-8"))
            await self._writer.drain()
        except OSError as err:
            log.error("IPC write error: %r", err)
            for request in message.requests:
                if self._pending.get(request.id) is request.future:
                    del self._pending[request.id]
                _fail(request.future, _recv_error())

    def _consume(self, buffer: bytearray) -> None:
        text = _decode_prefix(buffer)
        consumed = 0
        while True:
            start = _WHITESPACE.match(text, consumed).end()
            if start >= len(text):
                break
            try:
                value, end = _DECODER.raw_decode(text, start)
            except ValueError:
                break
            consumed = end
            self._handle_value(value)
        del buffer[: len(text[:consumed].encode("utf-8"))]

    def _handle_value(self, value: Any) -> None:
        if _is_notification(value):
            self._notify(value)
            return
        outputs = _as_outputs(value)
        if outputs is None:
            log.warning("JSON is not a response or notification")
            return
        for output in outputs:
            self._respond_output(output)

    def _notify(self, notification: dict[str, Any]) -> None:
        params = notification.get("params")
        if not isinstance(params, dict):
            return
        subscription = params.get("subscription")
        if not isinstance(subscription, str) or "result" not in params:
            log.error("Got unsupported notification (id: %r)", subscription)
            return
        stream = self._subscriptions.get(subscription)
        if stream is None:
            log.warning("Got notification for unknown subscription (id: %r)", subscription)
            return
        try:
            stream.push(params["result"])
        except TransportError as err:
            log.error("Error sending notification: %s (id: %r)", err, subscription)

    def _respond_output(self, output: dict[str, Any]) -> None:
        response_id = output.get("id")
        if not isinstance(response_id, int) or isinstance(response_id, bool) or response_id < 0:
            log.warning("Got unsupported response (id: %r)", response_id)
            return
        future = self._pending.pop(response_id, None)
        if future is None:
            log.warning("Got response for unknown request (id: %r)", response_id)
            return
        if future.done():
            log.warning("Sending a response to a finished request (id: %r)", response_id)
            return
        future.set_result(output)