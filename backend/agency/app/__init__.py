"""FastAPI application package for the agency backend."""

from .logging import setup_logging

setup_logging()

__all__ = ["setup_logging"]
