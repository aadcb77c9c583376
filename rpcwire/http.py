"""A transport sending JSON-RPC calls as HTTP POST requests."""

from __future__ import annotations

import itertools
import json
import logging
import threading
from collections.abc import Iterable
from typing import Any

import httpx

from .base import (
    BatchTransport,
    InvalidResponseError,
    TransportError,
    TransportFailure,
    build_request,
    output_id,
    to_json,
    to_result_from_output,
)

log = logging.getLogger(__name__)

USER_AGENT = "rpcwire"


def _parse_url(url: str) -> httpx.URL:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError) as err:
        raise TransportError(f"failed to parse url: {err}") from err
    if not parsed.scheme:
        raise TransportError("failed to parse url: relative URL without a base")
    if parsed.scheme in ("http", "https") and not parsed.host:
        raise TransportError("failed to parse url: empty host")
    return parsed


class Http(BatchTransport):
    """Sends each call, or each batch of calls, as one HTTP POST to a fixed URL.

    Without a ``client`` an ``httpx.AsyncClient`` is created and owned by the
    transport; ``aclose`` closes it.
    """

    def __init__(self, url: str, client: httpx.AsyncClient | None = None) -> None:
        self.url = _parse_url(url)
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(headers={"User-Agent": USER_AGENT})
        self._ids = itertools.count()
        self._id_lock = threading.Lock()

    async def __aenter__(self) -> Http:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def prepare(self, method: str, params: list[Any]) -> tuple[int, dict[str, Any]]:
        request_id = self._next_id()
        return request_id, build_request(request_id, method, params)

    def send(self, id: int, request: dict[str, Any]):
        return self._send(id, request)

    def send_batch(self, requests: Iterable[tuple[int, dict[str, Any]]]):
        # The batch id only ties the response log to the request log.
        batch_id = self._next_id()
        pairs = list(requests)
        ids = [request_id for request_id, _ in pairs]
        calls = [call for _, call in pairs]
        return self._send_batch(batch_id, ids, calls)

    async def aclose(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, request_id: int, call: dict[str, Any]) -> Any:
        output = await self._execute(call, request_id)
        return to_result_from_output(output)

    async def _send_batch(self, batch_id: int, ids: list[int], calls: list[dict[str, Any]]) -> list[Any]:
        value = await self._execute(calls, batch_id)
        outputs = handle_possible_error_object_for_batched_request(value)
        return handle_batch_response(ids, outputs)

    async def _execute(self, request: Any, request_id: int) -> Any:
        body = to_json(request)
        log.debug("[id:%s] sending request: %s", request_id, body)
        try:
            response = await self._client.post(
                self.url,
                content=body.encode("utf-8"),
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as err:
            raise TransportError(f"failed to send request: {err}") from err
        content = response.content
        text = content.decode("utf-8", errors="replace")
        log.debug("[id:%s] received response: %r", request_id, text)
        if not response.is_success:
            raise TransportError(code=response.status_code)
        try:
            return json.loads(content)
        except ValueError as err:
            raise TransportError(f"failed to deserialize response: {err}: {text}") from err


def handle_possible_error_object_for_batched_request(value: Any) -> list[Any]:
    """Return the outputs of a batch response, raising if the server sent one object instead."""
    if isinstance(value, dict):
        if "error" in value:
            to_result_from_output(value)
        raise InvalidResponseError(f"Invalid response for batched request: {value!r}")
    if not isinstance(value, list):
        raise InvalidResponseError(f"invalid batch response: {value!r}")
    return value


def handle_batch_response(ids: list[int], outputs: list[Any]) -> list[Any]:
    """Order batch outputs by request id.

    Each entry is the call's result or the ``TransportFailure`` it ended with.
    """
    if len(ids) != len(outputs):
        raise InvalidResponseError("unexpected number of responses")
    by_id: dict[int, Any] = {}
    for output in outputs:
        response_id = output_id(output)
        try:
            by_id[response_id] = to_result_from_output(output)
        except TransportFailure as err:
            by_id[response_id] = err
    results: list[Any] = []
    for request_id in ids:
        if request_id not in by_id:
            raise InvalidResponseError(f"batch response is missing id {request_id}")
        results.append(by_id.pop(request_id))
    return results