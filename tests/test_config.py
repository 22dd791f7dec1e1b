"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from onebox.core.config import load_app_settings


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    """Ensure each test sees a fresh settings instance."""

    load_app_settings.cache_clear()


def test_defaults_loaded_without_env_file() -> None:
    """Default values should be returned when no overrides are present."""

    settings = load_app_settings(include_environment=False)
    assert settings.imap.mailbox == "INBOX"
    assert settings.imap.idle_refresh_seconds == 300.0
    assert settings.sync.backfill_days == 30
    assert settings.classifier.body_limit == 1000
    assert settings.storage.db_path == Path("./onebox.db")
    assert settings.security.encryption_key is None


def test_env_file_overrides(tmp_path: Path) -> None:
    """Values defined in an env file should override defaults."""

    env_file = tmp_path / "test.env"
    env_file.write_text(
        "ONEBOX_SYNC__BACKFILL_DAYS=7\n"
        "ONEBOX_NOTIFICATIONS__WEBHOOK_URL=https://hooks.example/x\n"
        "ONEBOX_LLM__FALLBACK_ENABLED=false\n"
        "ONEBOX_SECURITY__ENCRYPTION_KEY=\n"
        "OTHER_SETTING=ignored\n",
        encoding="utf-8",
    )

    settings = load_app_settings(env_file=env_file, include_environment=False)
    assert settings.sync.backfill_days == 7
    assert settings.notifications.webhook_url == "https://hooks.example/x"
    assert settings.llm.fallback_enabled is False
    assert settings.security.encryption_key is None


def test_environment_wins_over_env_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Process environment values take precedence over the env file."""

    env_file = tmp_path / "test.env"
    env_file.write_text("ONEBOX_IMAP__MAILBOX=Archive\n", encoding="utf-8")
    monkeypatch.setenv("ONEBOX_IMAP__MAILBOX", "Sales")

    settings = load_app_settings(env_file=env_file)
    assert settings.imap.mailbox == "Sales"


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    """Out-of-range values fail validation instead of being clamped."""

    env_file = tmp_path / "test.env"
    env_file.write_text("ONEBOX_IMAP__IDLE_REFRESH_SECONDS=3600\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_app_settings(env_file=env_file, include_environment=False)
