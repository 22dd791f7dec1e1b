"""Tests for the SQLite-backed message repository."""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from onebox.core.config import StorageSettings
from onebox.core.models import AttachmentMeta, Category, Message
from onebox.storage import SqliteMessageRepository


def _sample_message(
    message_id: str = "<10@example.com>",
    account_id: str = "a1",
    *,
    category: Category = Category.INTERESTED,
    offset_minutes: int = 0,
) -> Message:
    timestamp = datetime(2025, 10, 24, 15, 0, tzinfo=timezone.utc) + timedelta(
        minutes=offset_minutes
    )
    return Message(
        message_id=message_id,
        account_id=account_id,
        sender="sender@example.com",
        recipients=("user@example.com",),
        subject="Demo",
        body="Hello",
        html_body="<p>Hello</p>",
        timestamp=timestamp,
        folder="INBOX",
        attachments=(
            AttachmentMeta(filename="note.txt", content_type="text/plain", size=5),
        ),
        headers={"subject": "Demo"},
        category=category,
    )


def test_repository_persists_message_and_attachments(tmp_path: Path) -> None:
    db_path = tmp_path / "onebox.db"
    repository = SqliteMessageRepository(StorageSettings(db_path=db_path))
    message = _sample_message()
    repository.upsert(message)
    repository.close()

    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        row = conn.execute(
            "SELECT id, subject, from_email, category FROM emails WHERE message_id = ?",
            ("<10@example.com>",),
        ).fetchone()
        assert row is not None
        assert row["id"] == message.id
        assert row["subject"] == "Demo"
        assert row["from_email"] == "sender@example.com"
        assert row["category"] == "Interested"


def test_upsert_is_idempotent_and_last_write_wins(
    repository: SqliteMessageRepository,
) -> None:
    message = _sample_message()
    repository.upsert(message)
    repository.upsert(message)
    repository.upsert(replace(message, subject="Updated", category=Category.SPAM))

    assert repository.count_messages() == 1
    stored = repository.fetch_message("<10@example.com>", "a1")
    assert stored is not None
    assert stored.subject == "Updated"
    assert stored.category is Category.SPAM


def test_upsert_reports_new_records_and_category_changes(
    repository: SqliteMessageRepository,
) -> None:
    message = _sample_message()

    assert repository.upsert(message) is True
    assert repository.upsert(replace(message, subject="Edited")) is False
    assert repository.upsert(replace(message, category=Category.SPAM)) is True
    assert repository.upsert(_sample_message(account_id="a2")) is True


def test_same_message_id_is_distinct_per_account(
    repository: SqliteMessageRepository,
) -> None:
    repository.upsert(_sample_message(account_id="a1"))
    repository.upsert(_sample_message(account_id="a2"))

    assert repository.count_messages() == 2
    assert repository.count_messages("a1") == 1
    first = repository.fetch_message("<10@example.com>", "a1")
    second = repository.fetch_message("<10@example.com>", "a2")
    assert first is not None and second is not None
    assert first.id != second.id


def test_fetch_message_roundtrips_fields(repository: SqliteMessageRepository) -> None:
    message = _sample_message()
    repository.upsert(message)

    stored = repository.fetch_message(message.message_id, message.account_id)

    assert stored is not None
    assert stored.recipients == ("user@example.com",)
    assert stored.timestamp == message.timestamp
    assert stored.attachments == message.attachments
    assert stored.headers == {"subject": "Demo"}
    assert stored.html_body == "<p>Hello</p>"
    assert repository.fetch_message("<missing@x>", "a1") is None


def test_list_messages_filters_and_orders(repository: SqliteMessageRepository) -> None:
    repository.upsert(_sample_message("<1@x>", offset_minutes=0))
    repository.upsert(_sample_message("<2@x>", category=Category.SPAM, offset_minutes=5))
    repository.upsert(_sample_message("<3@x>", offset_minutes=10))
    repository.upsert(_sample_message("<4@x>", account_id="a2"))

    interested = repository.list_messages(account_id="a1", category=Category.INTERESTED)
    latest = repository.list_messages(limit=1)

    assert [message.message_id for message in interested] == ["<3@x>", "<1@x>"]
    assert [message.message_id for message in latest] == ["<3@x>"]


def test_upsert_requires_dedupe_key(repository: SqliteMessageRepository) -> None:
    with pytest.raises(ValueError):
        repository.upsert(_sample_message(message_id=""))
    with pytest.raises(ValueError):
        repository.upsert(_sample_message(account_id=""))


def test_migrations_are_reapplied_safely(tmp_path: Path) -> None:
    settings = StorageSettings(db_path=tmp_path / "nested" / "onebox.db")
    with SqliteMessageRepository(settings) as repository:
        repository.upsert(_sample_message())

    with SqliteMessageRepository(settings) as repository:
        assert repository.count_messages() == 1
