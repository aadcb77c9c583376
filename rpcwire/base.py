"""Transport interfaces, JSON-RPC helpers and the errors transports raise."""

from __future__ import annotations

import abc
import asyncio
import json
from collections.abc import Awaitable, Iterable
from typing import Any

JSONRPC_VERSION = "2.0"


class TransportFailure(Exception):
    """Base class of every error raised by a transport."""

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        return self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), repr(self.args)))


class RpcError(TransportFailure):
    """An error object returned by the remote JSON-RPC endpoint."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(code, message, data)
        self.code = code
        self.message = message
        self.data = data

    def __str__(self) -> str:
        return f"RPC error {self.code}: {self.message}"


class InvalidResponseError(TransportFailure):
    """The response could not be understood."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"invalid response: {self.message}"


class TransportError(TransportFailure):
    """The transport itself failed, either with a message or a status code."""

    def __init__(self, message: str | None = None, code: int | None = None) -> None:
        super().__init__(message, code)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        if self.code is not None:
            return f"transport error: status code {self.code}"
        return f"transport error: {self.message}"


class InternalError(TransportFailure):
    """A request was dropped before a response could be delivered."""

    def __init__(self, message: str = "internal error") -> None:
        super().__init__(message)


class UnreachableError(TransportFailure):
    """A request arrived where none was expected."""

    def __init__(self, message: str = "unreachable") -> None:
        super().__init__(message)


_CLOSED = object()


class NotificationStream:
    """An unbounded asynchronous stream of subscription notifications."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, value: Any) -> None:
        """Deliver a notification to the stream."""
        if self._closed:
            raise TransportError("notification stream is closed")
        self._queue.put_nowait(value)

    def close(self) -> None:
        """End the stream once the queued notifications have been read."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> NotificationStream:
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


class Transport(abc.ABC):
    """Something that can send JSON-RPC method calls."""

    @abc.abstractmethod
    def prepare(self, method: str, params: list[Any]) -> tuple[int, dict[str, Any]]:
        """Assign an id to a call and build its request object."""

    @abc.abstractmethod
    def send(self, id: int, request: dict[str, Any]) -> Awaitable[Any]:
        """Send a prepared request; the awaitable yields the call's result."""

    async def execute(self, method: str, params: Iterable[Any]) -> Any:
        """Prepare and send a call, returning its result."""
        request_id, call = self.prepare(method, list(params))
        return await self.send(request_id, call)


class BatchTransport(Transport):
    """A transport able to send several calls at once.

    The awaitable returned by ``send_batch`` yields one entry per request:
    the call's result, or the ``TransportFailure`` it ended with.
    """

    @abc.abstractmethod
    def send_batch(self, requests: Iterable[tuple[int, dict[str, Any]]]) -> Awaitable[list[Any]]:
        """Send prepared requests together."""


class DuplexTransport(Transport):
    """A transport that also delivers subscription notifications."""

    @abc.abstractmethod
    def subscribe(self, id: str) -> NotificationStream:
        """Start delivering notifications of a subscription."""

    @abc.abstractmethod
    def unsubscribe(self, id: str) -> None:
        """Stop delivering notifications of a subscription."""


def build_request(id: int, method: str, params: list[Any]) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 method call object."""
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": list(params), "id": id}


def to_json(request: Any) -> str:
    """Serialise a request compactly, as it goes on the wire."""
    return json.dumps(request, separators=(",", ":"), ensure_ascii=False)


def _parse_error(error: Any) -> RpcError:
    if not isinstance(error, dict):
        raise InvalidResponseError(f"invalid error object: {error!r}")
    code = error.get("code")
    message = error.get("message")
    if not isinstance(code, int) or isinstance(code, bool) or not isinstance(message, str):
        raise InvalidResponseError(f"invalid error object: {error!r}")
    return RpcError(code, message, error.get("data"))


def to_result_from_output(output: Any) -> Any:
    """Return the result of a response output, raising its error if it failed."""
    if not isinstance(output, dict):
        raise InvalidResponseError(f"invalid output: {output!r}")
    if "error" in output:
        raise _parse_error(output["error"])
    if "result" in output:
        return output["result"]
    raise InvalidResponseError(f"output has neither result nor error: {output!r}")


def to_results_from_outputs(outputs: Iterable[Any]) -> list[Any]:
    """Convert outputs to results, keeping each failure as an exception instance."""
    results: list[Any] = []
    for output in outputs:
        try:
            results.append(to_result_from_output(output))
        except TransportFailure as err:
            results.append(err)
    return results


def output_id(output: Any) -> int:
    """Return the numeric id of a response output."""
    response_id = output.get("id") if isinstance(output, dict) else None
    if isinstance(response_id, int) and not isinstance(response_id, bool) and response_id >= 0:
        return response_id
    raise InvalidResponseError("response id is not u64")