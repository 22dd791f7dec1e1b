"""Shared fixtures for the test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from onebox.core.config import ImapSettings, StorageSettings, SyncSettings
from onebox.ingestion import IngestionPipeline, MessageParser
from onebox.intelligence import KeywordClassifier
from onebox.storage import SqliteMessageRepository

from helpers import RecordingNotifier


@pytest.fixture
def repository(tmp_path: Path):
    repo = SqliteMessageRepository(StorageSettings(db_path=tmp_path / "onebox.db"))
    yield repo
    repo.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def pipeline(repository: SqliteMessageRepository, notifier: RecordingNotifier):
    return IngestionPipeline(
        MessageParser(),
        KeywordClassifier(),
        repository,
        notifier,
        persist_retry_delay=0.0,
    )


@pytest.fixture
def fast_imap_settings() -> ImapSettings:
    return ImapSettings(
        connect_timeout_seconds=1.0,
        auth_timeout_seconds=1.0,
        fetch_timeout_seconds=1.0,
        idle_refresh_seconds=0.05,
    )


@pytest.fixture
def fast_sync_settings() -> SyncSettings:
    return SyncSettings(
        reconnect_base_seconds=0.01,
        reconnect_max_seconds=0.05,
        reconnect_jitter=0.0,
        shutdown_grace_seconds=2.0,
    )
