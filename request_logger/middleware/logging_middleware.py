"""
Access-log middleware.

Renders one record per HTTP exchange from a configurable format and hands
it to an emitter (an LWES UDP emitter unless one is supplied). Written as
pure ASGI rather than ``BaseHTTPMiddleware`` because the tokens need wire
state: whether the status line was actually written and when the last body
chunk went out.

Per exchange:
- entry: capture start time, peer address and original URL
- ``immediate``: log before the app runs, never again
- otherwise: log once, on whichever of ``finish`` / ``close`` comes first
- skip policy, then render, then ``emit`` on the next loop iteration
- method and path bound to structlog contextvars until the exchange ends
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import structlog
from pydantic import ValidationError
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from request_logger.capture import RequestCapture, RequestView, ResponseView, Signal
from request_logger.core.exceptions import InvalidOptionsError
from request_logger.emitter import LWESEmitter, LWESOptions
from request_logger.formats import FormatRegistry, FormatSpec, Renderer
from request_logger.formats import formats as default_formats
from request_logger.tokens import TokenRegistry
from request_logger.tokens import tokens as default_tokens

logger = logging.getLogger(__name__)

SkipPolicy = Callable[[RequestView, ResponseView], bool]


class Emitter(Protocol):
    def emit(self, event: Mapping[str, Any]) -> None: ...


def _never_skip(request: RequestView, response: ResponseView) -> bool:
    return False


def _build_lwes_options(lwes: LWESOptions | Mapping[str, Any] | None) -> LWESOptions:
    if lwes is None:
        return LWESOptions()
    if isinstance(lwes, LWESOptions):
        return lwes
    try:
        return LWESOptions(**lwes)
    except ValidationError as e:
        raise InvalidOptionsError(
            "Invalid LWES options", details={"errors": e.errors()}
        ) from e


class RequestLoggerMiddleware:
    """
    Middleware that emits an access-log record for every HTTP exchange.

    Args:
        app: The wrapped ASGI application.
        format: Named format (``"default"``, ``"short"``, ``"tiny"`` or one
                defined with ``define_format``), a specifier list, a
                whitespace-separated specifier string, or a renderer
                ``(tokens, request, response) -> record | None``.
        immediate: Log at request entry instead of on completion.
        skip: Predicate ``(request, response) -> bool``; true suppresses
              the record.
        emitter: Pre-built sink with an ``emit(event)`` method.
        lwes: ``LWESOptions`` or mapping (address, port, ttl, type) for the
              emitter built when ``emitter`` is not given. ``type`` is also
              the event type of every record.
        tokens: Token registry; the process-wide one by default.
        formats: Format registry; the process-wide one by default.
    """

    def __init__(
        self,
        app: ASGIApp,
        format: str | FormatSpec | None = "default",
        *,
        immediate: bool = False,
        skip: SkipPolicy | None = None,
        emitter: Emitter | None = None,
        lwes: LWESOptions | Mapping[str, Any] | None = None,
        tokens: TokenRegistry | None = None,
        formats: FormatRegistry | None = None,
    ) -> None:
        self.app = app
        self.immediate = immediate
        self.skip = skip or _never_skip
        self.tokens = tokens if tokens is not None else default_tokens
        registry = formats if formats is not None else default_formats

        # Resolved once; every exchange reuses the same renderer
        self.renderer: Renderer = registry.resolve(format)

        options = _build_lwes_options(lwes)
        self.event_type = options.type
        self.emitter: Emitter = emitter if emitter is not None else LWESEmitter(options)

        logger.info(
            "Request logger installed (renderer=%r, immediate=%s, emitter=%s)",
            self.renderer,
            immediate,
            type(self.emitter).__name__,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Exchange context for every log line written while it is in flight,
        # the emitter's included (call_soon copies the current context)
        with structlog.contextvars.bound_contextvars(
            http_method=scope.get("method"),
            http_path=scope.get("path"),
        ):
            await self._handle(scope, receive, send)

    async def _handle(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = RequestView(scope)
        request.capture = RequestCapture.begin(scope)
        response = ResponseView()

        fired = False

        def log_request() -> None:
            nonlocal fired
            response.remove_listener(Signal.FINISH, log_request)
            response.remove_listener(Signal.CLOSE, log_request)
            if fired:
                return
            fired = True
            self._log(request, response)

        if self.immediate:
            self._log(request, response)
        else:
            response.on(Signal.FINISH, log_request)
            response.on(Signal.CLOSE, log_request)

        async def receive_wrapper() -> Message:
            message = await receive()
            if message["type"] == "http.disconnect":
                response.signal(Signal.CLOSE)
            return message

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                response.stage(message)
                await send(message)
                response.headers_sent = True
            elif message["type"] == "http.response.body":
                await send(message)
                if not message.get("more_body", False):
                    response.finished = True
                    response.signal(Signal.FINISH)
            elif message["type"] == "http.response.pathsend":
                await send(message)
                response.finished = True
                response.signal(Signal.FINISH)
            else:
                await send(message)

        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        finally:
            # The app is done with the exchange: anything unfinished was cut short
            if not response.finished:
                response.signal(Signal.CLOSE)
            response.remove_all_listeners()

    def _log(self, request: RequestView, response: ResponseView) -> None:
        if self.skip(request, response):
            return

        record = self.renderer(self.tokens, request, response)
        if record is None:
            return

        event = {"type": self.event_type, "attributes": record}
        # Emit after the current callback unwinds, off the response path
        asyncio.get_running_loop().call_soon(self.emitter.emit, event)
