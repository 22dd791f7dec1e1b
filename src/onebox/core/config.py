"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class ImapSettings(BaseModel):
    """Connection parameters shared by every account session."""

    mailbox: str = Field(default="INBOX", description="Mailbox to monitor")
    connect_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Socket timeout for connect and login"
    )
    auth_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound for the login exchange"
    )
    fetch_timeout_seconds: float = Field(
        default=120.0, gt=0, description="Upper bound for a search+fetch cycle"
    )
    idle_refresh_seconds: float = Field(
        default=300.0,
        gt=0,
        le=29 * 60,
        description="Re-issue IDLE after this long without a push (keep-alive)",
    )


class SyncSettings(BaseModel):
    """Settings controlling backfill and reconnect behaviour."""

    backfill_days: int = Field(
        default=30, ge=0, description="Days of history searched on connect"
    )
    reconnect_base_seconds: float = Field(
        default=1.0, gt=0, description="First reconnect delay"
    )
    reconnect_max_seconds: float = Field(
        default=60.0, gt=0, description="Ceiling for reconnect delays"
    )
    reconnect_jitter: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Fractional random jitter applied to reconnect delays",
    )
    batch_size: int = Field(
        default=25, ge=1, description="Messages fetched per IMAP round trip"
    )
    shutdown_grace_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Time sessions get to finish in-flight work on stop",
    )
    max_concurrent_messages: int = Field(
        default=4, ge=1, description="Messages processed concurrently per batch"
    )


class ClassifierSettings(BaseModel):
    """Bounds applied by the pipeline around the classifier capability."""

    provider: str = Field(
        default="keyword", description="Classifier backend: 'keyword' or 'llm'"
    )
    body_limit: int = Field(
        default=1000, ge=0, description="Characters of body sent to the classifier"
    )
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound for a classification call"
    )


class LlmSettings(BaseModel):
    """Settings for the local LLM provider."""

    base_url: str = Field(
        default="http://localhost:11434", description="Ollama server URL"
    )
    model: str = Field(default="gpt-oss:20b", description="Model identifier")
    timeout_seconds: int = Field(
        default=30, description="Request timeout for LLM calls"
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for LLM completions",
    )
    max_output_tokens: int | None = Field(
        default=None,
        ge=1,
        description="Token cap per completion; unset uses the label-sized budget",
    )
    fallback_enabled: bool = Field(
        default=True, description="Use keyword rules when the LLM fails"
    )


class NotificationSettings(BaseModel):
    """Downstream sinks for interested messages and operational alerts."""

    slack_webhook_url: str | None = Field(
        default=None, description="Slack incoming-webhook URL"
    )
    webhook_url: str | None = Field(
        default=None, description="Generic JSON webhook URL"
    )
    alert_webhook_url: str | None = Field(
        default=None,
        description="Slack webhook for operational alerts; defaults to slack_webhook_url",
    )
    alerts_enabled: bool = Field(
        default=True, description="Post sync start, stop and error alerts to Slack"
    )
    app_url: str = Field(
        default="http://localhost:3000", description="Base URL linked from alerts"
    )
    timeout_seconds: float = Field(
        default=10.0, gt=0, description="HTTP timeout for notification calls"
    )


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./onebox.db"), description="SQLite database path"
    )
    persist_retries: int = Field(
        default=2, ge=0, description="Retries for a failed upsert"
    )


class SecuritySettings(BaseModel):
    """Credential decryption and account source."""

    encryption_key: str | None = Field(
        default=None, description="Fernet key used to decrypt stored passwords"
    )
    accounts_file: Path = Field(
        default=Path("./accounts.json"), description="JSON list of accounts"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    imap: ImapSettings = Field(default_factory=ImapSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    llm: LlmSettings = Field(default_factory=LlmSettings)
    notifications: NotificationSettings = Field(
        default_factory=NotificationSettings
    )
    storage: StorageSettings = Field(default_factory=StorageSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


ENV_PREFIX = "ONEBOX_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, include_environment: bool
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values: dict[str, str] = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "ClassifierSettings",
    "ImapSettings",
    "LlmSettings",
    "LoggingSettings",
    "NotificationSettings",
    "SecuritySettings",
    "StorageSettings",
    "SyncSettings",
    "load_app_settings",
]
