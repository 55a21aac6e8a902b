"""Middleware package for the Roll Engine API."""

from roll_engine.middleware.error_handler import setup_error_handlers

__all__ = [
    "setup_error_handlers",
]
