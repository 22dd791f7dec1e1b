"""Core utilities for configuration, logging, and shared models."""

from .config import AppSettings, SyncSettings, load_app_settings
from .logging import configure_logging
from .models import Account, Category, Message, SessionState

__all__ = [
    "Account",
    "AppSettings",
    "Category",
    "Message",
    "SessionState",
    "SyncSettings",
    "configure_logging",
    "load_app_settings",
]
