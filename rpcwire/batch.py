"""A transport that queues calls and sends them as one batch."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable
from typing import Any

from .base import BatchTransport, InternalError, Transport, TransportFailure


class Batch(Transport):
    """Queues calls until ``submit_batch`` sends them together.

    ``send`` only registers a call; the awaitable it returns completes once
    the batch holding that call has been submitted.
    """

    def __init__(self, transport: BatchTransport) -> None:
        self.transport = transport
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._queued: list[tuple[int, dict[str, Any]]] = []

    def prepare(self, method: str, params: list[Any]) -> tuple[int, dict[str, Any]]:
        return self.transport.prepare(method, params)

    def send(self, id: int, request: dict[str, Any]) -> asyncio.Future[Any]:
        future = asyncio.get_running_loop().create_future()
        replaced = self._pending.pop(id, None)
        if replaced is not None and not replaced.done():
            replaced.set_exception(InternalError())
        self._pending[id] = future
        self._queued.append((id, request))
        return future

    def submit_batch(self) -> Awaitable[list[Any]]:
        """Send every queued call and resolve their pending results."""
        queued, self._queued = self._queued, []
        ids = [request_id for request_id, _ in queued]
        return self._complete(ids, self.transport.send_batch(queued))

    async def _complete(self, ids: list[int], outcome: Awaitable[list[Any]]) -> list[Any]:
        try:
            results = await outcome
        except TransportFailure as err:
            for request_id in ids:
                self._resolve(request_id, copy.copy(err))
            raise
        for index, request_id in enumerate(ids):
            self._resolve(request_id, results[index] if index < len(results) else InternalError())
        return results

    def _resolve(self, request_id: int, outcome: Any) -> None:
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            return
        if isinstance(outcome, BaseException):
            future.set_exception(outcome)
        else:
            future.set_result(outcome)