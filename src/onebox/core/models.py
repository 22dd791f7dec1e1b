"""Core domain models used across the engine."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Category(str, Enum):
    """Closed set of labels assigned to an ingested message."""

    INTERESTED = "Interested"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    SPAM = "Spam"
    OUT_OF_OFFICE = "Out of Office"
    UNCATEGORIZED = "Uncategorized"

    @classmethod
    def parse(cls, value: object) -> Category:
        """Map a classifier answer onto the enumeration.

        Matching ignores case, surrounding punctuation, spaces, hyphens and
        underscores, so ``"meeting_booked"`` and ``"Meeting Booked."`` both
        resolve. Anything unrecognised is ``UNCATEGORIZED``.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return cls.UNCATEGORIZED
        wanted = _squash(value)
        for member in cls:
            if wanted in (_squash(member.value), _squash(member.name)):
                return member
        return cls.UNCATEGORIZED


def _squash(value: str) -> str:
    return "".join(ch for ch in value.lower() if ch.isalnum())


class SessionState(str, Enum):
    """Lifecycle states of a single account connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    IDLE = "idle"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True, slots=True)
class Account:
    """Mailbox account with an already decrypted credential."""

    id: str
    address: str
    host: str
    port: int
    username: str
    credential: str = field(repr=False)
    active: bool = True

    def validate(self) -> None:
        """Raise ``ValueError`` when the account cannot possibly connect."""
        if not self.id:
            raise ValueError("Account id is required")
        if not self.host:
            raise ValueError(f"Account {self.id} has no IMAP host")
        if not self.username:
            raise ValueError(f"Account {self.id} has no username")
        if not 0 < self.port < 65536:
            raise ValueError(f"Account {self.id} has invalid port {self.port}")


@dataclass(slots=True)
class RawFetchResult:
    """Raw IMAP payload paired with its UID."""

    uid: int
    raw: bytes


@dataclass(frozen=True, slots=True)
class AttachmentMeta:
    """Metadata describing an email attachment."""

    filename: str | None
    content_type: str | None
    size: int
    content_id: str | None = None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Message:
    """Normalized message ready for classification and persistence."""

    message_id: str
    account_id: str
    sender: str
    recipients: tuple[str, ...]
    subject: str
    body: str
    html_body: str | None
    timestamp: datetime
    folder: str
    attachments: tuple[AttachmentMeta, ...] = ()
    headers: dict[str, str] = field(default_factory=dict)
    is_read: bool = False
    category: Category = Category.UNCATEGORIZED

    @property
    def dedupe_key(self) -> tuple[str, str]:
        """Pair that identifies the underlying message across fetches."""
        return (self.message_id, self.account_id)

    @property
    def id(self) -> str:
        """Stable identifier derived from the dedupe key."""
        digest = hashlib.sha256(
            f"{self.account_id}\x00{self.message_id}".encode("utf-8")
        ).hexdigest()
        return f"{self.account_id}-{digest[:24]}"

    def categorize(self, category: Category) -> None:
        """Assign the classification result."""
        self.category = category


@dataclass(frozen=True, slots=True)
class SessionEvent:
    """Observable notification emitted by a session.

    ``message_ingested`` events also carry the processed message id and its
    category.
    """

    account_id: str
    kind: str
    state: SessionState
    error: BaseException | None = None
    message_id: str | None = None
    category: Category | None = None


@dataclass(slots=True)
class IngestionReport:
    """Outcome summary for one fetched batch."""

    fetched: int = 0
    parsed: int = 0
    persisted: int = 0
    notified: int = 0
    failed: int = 0

    def merge(self, other: IngestionReport) -> None:
        """Accumulate counters from ``other``."""
        self.fetched += other.fetched
        self.parsed += other.parsed
        self.persisted += other.persisted
        self.notified += other.notified
        self.failed += other.failed


EVENT_STATE_CHANGED = "state_changed"
EVENT_RECOVERABLE_ERROR = "recoverable_error"
EVENT_MESSAGE_INGESTED = "message_ingested"


__all__ = [
    "Account",
    "AttachmentMeta",
    "Category",
    "EVENT_MESSAGE_INGESTED",
    "EVENT_RECOVERABLE_ERROR",
    "EVENT_STATE_CHANGED",
    "IngestionReport",
    "Message",
    "RawFetchResult",
    "SessionEvent",
    "SessionState",
]
