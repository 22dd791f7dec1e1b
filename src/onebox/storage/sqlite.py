"""SQLite-backed message repository implementation."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from types import TracebackType

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utcnow
from ..core.interfaces import PersistenceError, PersistenceGateway
from ..core.models import AttachmentMeta, Category, Message

LOGGER = logging.getLogger(__name__)


class SqliteMessageRepository(PersistenceGateway):
    """Persist messages keyed on ``(message_id, account_id)``.

    Writes are serialised with a lock so the repository can be shared by
    every account session through ``asyncio.to_thread``.
    """

    def __init__(self, settings: StorageSettings) -> None:
        """Open the database and apply migrations."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._apply_migrations()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteMessageRepository:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # PersistenceGateway API --------------------------------------------------
    def upsert(self, message: Message) -> bool:
        """Insert ``message`` or overwrite the record sharing its dedupe key.

        Returns ``True`` when the record is new or its category changed.
        """
        if not message.message_id:
            raise ValueError("Message-ID is required")
        if not message.account_id:
            raise ValueError("Account id is required")
        LOGGER.debug("Upserting message %s", message.dedupe_key)

        attachments = json.dumps(
            [
                {
                    "filename": attachment.filename,
                    "contentType": attachment.content_type,
                    "size": attachment.size,
                    "contentId": attachment.content_id,
                }
                for attachment in message.attachments
            ]
        )
        try:
            with self._lock, self._connection:
                previous = self._connection.execute(
                    "SELECT category FROM emails WHERE message_id = ? AND account_id = ?",
                    (message.message_id, message.account_id),
                ).fetchone()
                self._connection.execute(
                    """
                    INSERT INTO emails (
                        id,
                        message_id,
                        account_id,
                        from_email,
                        to_emails,
                        subject,
                        body,
                        html_body,
                        date,
                        folder,
                        category,
                        is_read,
                        attachments,
                        headers,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(message_id, account_id) DO UPDATE SET
                        id=excluded.id,
                        from_email=excluded.from_email,
                        to_emails=excluded.to_emails,
                        subject=excluded.subject,
                        body=excluded.body,
                        html_body=excluded.html_body,
                        date=excluded.date,
                        folder=excluded.folder,
                        category=excluded.category,
                        is_read=excluded.is_read,
                        attachments=excluded.attachments,
                        headers=excluded.headers,
                        updated_at=excluded.updated_at
                    """,
                    (
                        message.id,
                        message.message_id,
                        message.account_id,
                        message.sender,
                        json.dumps(list(message.recipients)),
                        message.subject,
                        message.body,
                        message.html_body,
                        serialize_datetime(message.timestamp),
                        message.folder,
                        message.category.value,
                        int(message.is_read),
                        attachments,
                        json.dumps(message.headers),
                        serialize_datetime(utcnow()),
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Failed to upsert message {message.dedupe_key}"
            ) from exc
        return previous is None or previous["category"] != message.category.value

    # Queries -----------------------------------------------------------------
    def fetch_message(self, message_id: str, account_id: str) -> Message | None:
        """Return the stored record for the dedupe key, if any."""
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM emails WHERE message_id = ? AND account_id = ?",
                (message_id, account_id),
            ).fetchone()
        return _row_to_message(row) if row is not None else None

    def list_messages(
        self,
        *,
        account_id: str | None = None,
        category: Category | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Return stored messages, newest first, optionally filtered."""
        clauses: list[str] = []
        params: list[object] = []
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(account_id)
        if category is not None:
            clauses.append("category = ?")
            params.append(category.value)
        query = "SELECT * FROM emails"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY date DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._connection.execute(query, params).fetchall()
        return [_row_to_message(row) for row in rows]

    def count_messages(self, account_id: str | None = None) -> int:
        """Return the number of stored messages."""
        with self._lock:
            if account_id is None:
                row = self._connection.execute("SELECT COUNT(*) FROM emails").fetchone()
            else:
                row = self._connection.execute(
                    "SELECT COUNT(*) FROM emails WHERE account_id = ?", (account_id,)
                ).fetchone()
        return int(row[0]) if row else 0

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._connection.close()

    # Internal helpers ---------------------------------------------------------
    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        for migration in sorted(schema_dir.glob("*.sql")):
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            with self._connection:
                self._connection.executescript(script)


def _row_to_message(row: sqlite3.Row) -> Message:
    attachments = tuple(
        AttachmentMeta(
            filename=item.get("filename"),
            content_type=item.get("contentType"),
            size=int(item.get("size") or 0),
            content_id=item.get("contentId"),
        )
        for item in json.loads(row["attachments"] or "[]")
    )
    timestamp = parse_datetime(row["date"]) or utcnow()
    return Message(
        message_id=row["message_id"],
        account_id=row["account_id"],
        sender=row["from_email"],
        recipients=tuple(json.loads(row["to_emails"] or "[]")),
        subject=row["subject"],
        body=row["body"],
        html_body=row["html_body"],
        timestamp=timestamp,
        folder=row["folder"],
        attachments=attachments,
        headers=json.loads(row["headers"] or "{}"),
        is_read=bool(row["is_read"]),
        category=Category.parse(row["category"]),
    )


__all__ = ["SqliteMessageRepository"]
