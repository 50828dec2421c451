"""
Token registry and the built-in tokens.

A token is a named extractor ``fn(request, response, argument)`` returning
the value for one field of an access-log record, or a falsy value when the
data is not available (rendered as ``"-"``).

Registration is a startup-time operation: the registry is not locked, and
registering tokens while requests are in flight is not supported.
"""

import logging
from collections.abc import Callable, Iterator
from email.utils import formatdate
from typing import Any

from request_logger.capture import RequestView, ResponseView
from request_logger.core.exceptions import UnknownTokenError

logger = logging.getLogger(__name__)

TokenFn = Callable[[RequestView, ResponseView, str | None], Any]


class TokenRegistry:
    """Process-wide catalog of token extractors. Entries can be added or
    overwritten, never removed."""

    def __init__(self) -> None:
        self._tokens: dict[str, TokenFn] = {}

    def register(self, name: str, fn: TokenFn) -> "TokenRegistry":
        if name in self._tokens:
            logger.debug("Overriding token ':%s'", name)
        self._tokens[name] = fn
        return self

    def lookup(self, name: str) -> TokenFn | None:
        return self._tokens.get(name)

    def __getitem__(self, name: str) -> TokenFn:
        try:
            return self._tokens[name]
        except KeyError:
            raise UnknownTokenError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._tokens

    def __iter__(self) -> Iterator[str]:
        return iter(self._tokens)

    def names(self) -> list[str]:
        return list(self._tokens)


tokens = TokenRegistry()


def token(name: str, fn: TokenFn | None = None):
    """
    Register a token on the process-wide registry.

    Works as a call or as a decorator:

        token("route", lambda req, res, arg: req.scope.get("route"))

        @token("route")
        def route(req, res, arg): ...
    """
    if fn is not None:
        tokens.register(name, fn)
        return tokens

    def decorator(func: TokenFn) -> TokenFn:
        tokens.register(name, func)
        return func

    return decorator


# ─── Built-in Tokens ──────────────────────────────────────────


@token("url")
def _url(req: RequestView, res: ResponseView, arg: str | None = None) -> str:
    return req.original_url or req.url


@token("method")
def _method(req: RequestView, res: ResponseView, arg: str | None = None) -> str:
    return req.method


@token("response-time")
def _response_time(req: RequestView, res: ResponseView, arg: str | None = None) -> str | None:
    """Milliseconds since request entry, to three decimals."""
    if not res.headers_sent or req.capture is None:
        return None
    elapsed = req.capture.elapsed_ms()
    if elapsed is None:
        return None
    return f"{elapsed:.3f}"


@token("date")
def _date(req: RequestView, res: ResponseView, arg: str | None = None) -> str:
    return formatdate(usegmt=True)


@token("status")
def _status(req: RequestView, res: ResponseView, arg: str | None = None) -> int | None:
    # Wire state: a staged status that was never written does not count
    return res.status_code if res.headers_sent else None


@token("referrer")
def _referrer(req: RequestView, res: ResponseView, arg: str | None = None) -> str | None:
    headers = req.headers
    return headers.get("referer") or headers.get("referrer")


@token("remote-addr")
def _remote_addr(req: RequestView, res: ResponseView, arg: str | None = None) -> str | None:
    """
    Client address, most trustworthy source first:

    1. IP parsed by the framework (trusted proxy layer)
    2. Peer address captured at request entry
    3. Live peer address, which may already be gone on ``Connection: close``
    """
    if req.ip:
        return req.ip
    if req.capture is not None and req.capture.remote_address:
        return req.capture.remote_address
    return req.peer_address


@token("http-version")
def _http_version(req: RequestView, res: ResponseView, arg: str | None = None) -> str:
    major, _, minor = req.http_version.partition(".")
    return f"{major}.{minor or '0'}"


@token("user-agent")
def _user_agent(req: RequestView, res: ResponseView, arg: str | None = None) -> str | None:
    return req.headers.get("user-agent")


@token("request")
def _request_header(req: RequestView, res: ResponseView, arg: str | None = None) -> str | None:
    if not arg:
        return None
    return req.headers.get(arg.lower())


@token("response")
def _response_header(req: RequestView, res: ResponseView, arg: str | None = None) -> str | None:
    if not arg:
        return None
    return res.headers.get(arg.lower())
