"""
Per-exchange request capture and the request/response views tokens read.

An ASGI exchange has no request or response objects of its own, only a
scope and a stream of messages. ``RequestView`` wraps the scope (which
downstream routers may mutate in place), and ``ResponseView`` records what
the application has handed to the server so far:

- ``status_code`` / ``headers``: staged as soon as the app sends
  ``http.response.start``
- ``headers_sent``: true only once the server's ``send`` for that message
  returned, i.e. the status line is on the wire
- ``finished``: the final body chunk was written

``ResponseView`` also carries the two completion signals, ``finish`` and
``close``, that the middleware subscribes to.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from starlette.datastructures import Headers
from starlette.types import Message, Scope

logger = logging.getLogger(__name__)

# Scope state key a trusted proxy layer may set to the parsed client IP
CLIENT_IP_STATE_KEY = "client_ip"


def _peer_host(scope: Scope) -> str | None:
    client = scope.get("client")
    return client[0] if client else None


def _path_with_query(scope: Scope) -> str:
    # ASGI "path" already carries any root_path prefix
    path = scope.get("path", "")
    query = scope.get("query_string", b"")
    if query:
        return f"{path}?{query.decode('latin-1')}"
    return path


@dataclass
class RequestCapture:
    """State taken at request entry, before anything downstream runs.

    ``remote_address`` is kept because the live peer can be gone by the
    time a record renders. ``start_at`` is a ``perf_counter_ns`` reading,
    so elapsed time is immune to wall-clock jumps.
    """

    start_at: int | None
    start_time: datetime
    remote_address: str | None
    original_url: str | None

    @classmethod
    def begin(cls, scope: Scope) -> "RequestCapture":
        return cls(
            start_at=time.perf_counter_ns(),
            start_time=datetime.now(UTC),
            remote_address=_peer_host(scope),
            original_url=_path_with_query(scope),
        )

    def elapsed_ms(self) -> float | None:
        if self.start_at is None:
            return None
        return (time.perf_counter_ns() - self.start_at) / 1e6


class RequestView:
    """Read-only view over an ASGI HTTP scope."""

    def __init__(self, scope: Scope):
        self.scope = scope
        self.capture: RequestCapture | None = None

    @property
    def method(self) -> str:
        return self.scope["method"]

    @property
    def url(self) -> str:
        """Current path and query; reflects downstream rewrites."""
        return _path_with_query(self.scope)

    @property
    def original_url(self) -> str | None:
        return self.capture.original_url if self.capture else None

    @property
    def headers(self) -> Headers:
        return Headers(scope=self.scope)

    @property
    def ip(self) -> str | None:
        return self.scope.get("state", {}).get(CLIENT_IP_STATE_KEY)

    @property
    def peer_address(self) -> str | None:
        return _peer_host(self.scope)

    @property
    def http_version(self) -> str:
        return self.scope.get("http_version", "1.1")


class Signal(StrEnum):
    """Completion signals of an exchange."""
    FINISH = "finish"  # Final body chunk written
    CLOSE = "close"    # Client went away, or the app ended without finishing


@dataclass
class ResponseView:
    """What the application has sent so far, plus completion signals."""

    status_code: int | None = None
    headers: Headers = field(default_factory=Headers)
    headers_sent: bool = False
    finished: bool = False
    _listeners: dict[Signal, list[Callable[[], Any]]] = field(
        default_factory=lambda: {signal: [] for signal in Signal},
        repr=False,
    )

    def stage(self, message: Message) -> None:
        """Record an ``http.response.start`` message before it is written."""
        self.status_code = message["status"]
        self.headers = Headers(raw=list(message.get("headers", [])))

    def on(self, signal: Signal, listener: Callable[[], Any]) -> None:
        self._listeners[signal].append(listener)

    def remove_listener(self, signal: Signal, listener: Callable[[], Any]) -> None:
        listeners = self._listeners[signal]
        if listener in listeners:
            listeners.remove(listener)

    def remove_all_listeners(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()

    def listener_count(self, signal: Signal) -> int:
        return len(self._listeners[signal])

    def signal(self, signal: Signal) -> None:
        """Invoke every listener of ``signal``; listeners may detach themselves."""
        for listener in list(self._listeners[signal]):
            listener()
