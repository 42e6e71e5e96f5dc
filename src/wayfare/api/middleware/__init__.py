"""FastAPI middleware components."""

from wayfare.api.middleware.exception_handler import setup_exception_handlers
from wayfare.api.middleware.logging import LoggingMiddleware

__all__ = [
    "LoggingMiddleware",
    "setup_exception_handlers",
]
