from request_logger.middleware.logging_middleware import RequestLoggerMiddleware

__all__ = ["RequestLoggerMiddleware"]
