"""API middleware package."""

from src.dealsmart.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
