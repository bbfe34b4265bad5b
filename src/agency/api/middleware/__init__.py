"""API middleware package."""

from src.agency.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
