"""A scripted transport for exercising code that talks JSON-RPC."""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable
from typing import Any

from .base import Transport, UnreachableError, build_request, to_json


async def _resolved(value: Any, failure: BaseException | None) -> Any:
    if failure is not None:
        raise failure
    return value


class MockTransport(Transport):
    """Records the calls made and answers them from a queue of responses."""

    def __init__(self) -> None:
        self._asserted = 0
        self._requests: list[tuple[str, list[Any]]] = []
        self._responses: deque[Any] = deque()

    def prepare(self, method: str, params: list[Any]) -> tuple[int, dict[str, Any]]:
        request = build_request(1, method, params)
        self._requests.append((method, list(params)))
        return len(self._requests), request

    def send(self, id: int, request: dict[str, Any]) -> Awaitable[Any]:
        if self._responses:
            return _resolved(self._responses.popleft(), None)
        return _resolved(None, UnreachableError(f"unexpected request (id: {id}): {request!r}"))

    def set_response(self, value: Any) -> None:
        """Replace all queued responses with a single one."""
        self._responses = deque([value])

    def add_response(self, value: Any) -> None:
        """Queue another response."""
        self._responses.append(value)

    def assert_request(self, method: str, params: list[str]) -> None:
        """Check the next unchecked call against a method and JSON-encoded params."""
        index = self._asserted
        self._asserted += 1
        if index >= len(self._requests):
            raise AssertionError("Expected result.")
        recorded_method, recorded_params = self._requests[index]
        if recorded_method != method:
            raise AssertionError(f"expected method {method!r}, got {recorded_method!r}")
        encoded = [to_json(param) for param in recorded_params]
        if encoded != list(params):
            raise AssertionError(f"expected params {list(params)!r}, got {encoded!r}")

    def assert_no_more_requests(self) -> None:
        """Check that every recorded call has been asserted."""
        if self._asserted != len(self._requests):
            remaining = self._requests[self._asserted:]
            raise AssertionError(f"Expected no more requests, got: {remaining!r}")