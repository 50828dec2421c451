"""
ASGI access-log middleware that ships records as LWES events.
"""

__version__ = "0.1.0"

from request_logger.emitter import LWESEmitter, LWESOptions
from request_logger.formats import compile_format, define_format
from request_logger.middleware.logging_middleware import RequestLoggerMiddleware
from request_logger.tokens import token

__all__ = [
    "LWESEmitter",
    "LWESOptions",
    "RequestLoggerMiddleware",
    "compile_format",
    "define_format",
    "token",
]
