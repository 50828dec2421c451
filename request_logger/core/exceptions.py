"""
Custom exception hierarchy for the request logger.

All package-specific exceptions inherit from RequestLoggerError so callers
can catch everything the logger raises in one place, while format and
emitter problems stay distinguishable.
"""


class RequestLoggerError(Exception):
    """Base exception for all request logger errors."""

    def __init__(self, message: str = "", details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# ─── Format Errors ────────────────────────────────────────────


class FormatError(RequestLoggerError):
    """A log format could not be rendered."""

    pass


class UnknownTokenError(FormatError):
    """A format references a token that was never registered."""

    def __init__(self, name: str, **kwargs):
        self.name = name
        super().__init__(message=f"Unknown token ':{name}'", **kwargs)


class MalformedSpecifierError(FormatError):
    """A format entry is neither a token specifier nor a literal string."""

    def __init__(self, specifier: object, **kwargs):
        self.specifier = specifier
        super().__init__(message=f"Malformed format specifier: {specifier!r}", **kwargs)


# ─── Emitter Errors ───────────────────────────────────────────


class EmitterError(RequestLoggerError):
    """Error raised while serializing or sending an event."""

    pass


class EventTooLargeError(EmitterError):
    """The serialized event does not fit the LWES wire limits."""

    def __init__(self, size: int, limit: int, **kwargs):
        self.size = size
        self.limit = limit
        message = f"Serialized event is {size} bytes, limit is {limit}"
        super().__init__(message=message, **kwargs)


# ─── Configuration Errors ─────────────────────────────────────


class InvalidOptionsError(RequestLoggerError):
    """Middleware options could not be turned into a working configuration."""

    pass
