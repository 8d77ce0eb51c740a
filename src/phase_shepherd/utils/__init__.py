"""Shared utilities."""

from .rich_logging import ContextLogger, setup_rich_logging

__all__ = ["ContextLogger", "setup_rich_logging"]
