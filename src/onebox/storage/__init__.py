"""Persistence adapters."""

from .sqlite import SqliteMessageRepository

__all__ = ["SqliteMessageRepository"]
