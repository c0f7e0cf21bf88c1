"""Shared helpers for the generation service."""

from .logging import get_logger, init_logging

__all__ = ["get_logger", "init_logging"]
