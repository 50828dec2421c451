"""
Shared test fixtures for the request logger test suite.
"""

from collections.abc import Callable, Iterable
from typing import Any

import pytest

from request_logger.capture import RequestCapture, RequestView, ResponseView


class RecordingEmitter:
    """Emitter double that keeps every event it is handed."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def emit(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    @property
    def records(self) -> list[dict[str, str]]:
        return [event["attributes"] for event in self.events]


def build_scope(
    path: str = "/",
    method: str = "GET",
    headers: Iterable[tuple[str, str]] = (),
    query_string: bytes = b"",
    client: tuple[str, int] | None = ("127.0.0.1", 54321),
    http_version: str = "1.1",
    root_path: str = "",
) -> dict[str, Any]:
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": http_version,
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": root_path,
        "query_string": query_string,
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers],
        "client": client,
        "server": ("testserver", 80),
    }


@pytest.fixture
def emitter() -> RecordingEmitter:
    """A fresh recording emitter."""
    return RecordingEmitter()


@pytest.fixture
def make_scope() -> Callable[..., dict[str, Any]]:
    """Factory for ASGI HTTP scopes."""
    return build_scope


@pytest.fixture
def make_views() -> Callable[..., tuple[RequestView, ResponseView]]:
    """Factory for captured request views and an empty response view.

    Keyword arguments go to the scope factory; ``sent_status`` simulates a
    response whose start line is already on the wire.
    """

    def _make(
        sent_status: int | None = None,
        response_headers: Iterable[tuple[str, str]] = (),
        **scope_kwargs: Any,
    ) -> tuple[RequestView, ResponseView]:
        scope = build_scope(**scope_kwargs)
        request = RequestView(scope)
        request.capture = RequestCapture.begin(scope)
        response = ResponseView()
        if sent_status is not None:
            response.stage(
                {
                    "type": "http.response.start",
                    "status": sent_status,
                    "headers": [
                        (k.lower().encode("latin-1"), v.encode("latin-1"))
                        for k, v in response_headers
                    ],
                }
            )
            response.headers_sent = True
        return request, response

    return _make
