"""Per-account connection sessions and their coordinator."""

from .backoff import Backoff
from .coordinator import SessionFactory, SyncCoordinator, build_session_factory
from .session import ConnectionSession, ProviderFactory, SessionStopped

__all__ = [
    "Backoff",
    "ConnectionSession",
    "ProviderFactory",
    "SessionFactory",
    "SessionStopped",
    "SyncCoordinator",
    "build_session_factory",
]
