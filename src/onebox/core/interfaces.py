"""Protocol interfaces for decoupling the engine from its collaborators."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from .models import Account, Category, Message, RawFetchResult


class ImapError(RuntimeError):
    """Wrap low level IMAP errors with additional context."""


class ParseError(ValueError):
    """Raised when a raw payload cannot be turned into a message."""


class ClassifierError(RuntimeError):
    """Raised when the classifier capability cannot produce a label."""


class NotificationError(RuntimeError):
    """Raised by a notifier sink that failed to deliver."""


class PersistenceError(RuntimeError):
    """Raised when a message could not be stored."""


class ConfigurationError(RuntimeError):
    """Raised when required configuration is missing at startup."""


class MailboxProvider(Protocol):
    """Blocking connection to one account's mailbox."""

    mailbox: str

    def connect(self) -> None:
        """Open a TLS connection, authenticate and select the mailbox."""
        raise NotImplementedError

    def search_since(self, since: datetime) -> Sequence[int]:
        """Return UIDs of messages received on or after ``since``."""
        raise NotImplementedError

    def search_unseen(self) -> Sequence[int]:
        """Return UIDs of messages without the ``\\Seen`` flag."""
        raise NotImplementedError

    def fetch(self, uids: Sequence[int]) -> list[RawFetchResult]:
        """Return raw RFC822 payloads for ``uids``."""
        raise NotImplementedError

    def wait_for_push(self, timeout: float) -> bool:
        """Block in IDLE until the server signals new mail or ``timeout`` ends.

        Returns ``True`` when a push was received.
        """
        raise NotImplementedError

    def keepalive(self) -> None:
        """Send a NOOP so intermediaries keep the connection open."""
        raise NotImplementedError

    def interrupt(self) -> None:
        """Unblock a pending IDLE wait from another thread."""
        raise NotImplementedError

    def close(self) -> None:
        """Release any network resources."""
        raise NotImplementedError


class Classifier(Protocol):
    """Maps message content to one of the category labels."""

    def classify(self, sender: str, subject: str, body_excerpt: str) -> Category | str:
        """Return a category or a label string for the supplied excerpt."""
        raise NotImplementedError


class Notifier(Protocol):
    """Delivers interested messages to chat or webhook sinks."""

    def notify(self, message: Message, account: Account) -> None:
        """Send a notification; failures may raise."""
        raise NotImplementedError


class PersistenceGateway(Protocol):
    """Durable message store with idempotent upsert semantics."""

    def upsert(self, message: Message) -> bool:
        """Insert or overwrite the record keyed on ``message.dedupe_key``.

        Returns ``True`` when the record is new or its category changed.
        """
        raise NotImplementedError


class CredentialDecryptor(Protocol):
    """Turns a stored credential token into a plaintext password."""

    def decrypt(self, token: str) -> str:
        """Return the plaintext for ``token``."""
        raise NotImplementedError


__all__ = [
    "Classifier",
    "ClassifierError",
    "ConfigurationError",
    "CredentialDecryptor",
    "ImapError",
    "MailboxProvider",
    "NotificationError",
    "Notifier",
    "ParseError",
    "PersistenceError",
    "PersistenceGateway",
]
