"""Command-line entry point for OneBox."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import signal
import sys
from pathlib import Path

from onebox.core import AppSettings, configure_logging, load_app_settings
from onebox.core.interfaces import Classifier, ConfigurationError
from onebox.core.models import EVENT_RECOVERABLE_ERROR, Account, SessionEvent
from onebox.ingestion import IngestionPipeline, MessageParser
from onebox.intelligence import KeywordClassifier, LlmClassifier, OllamaClient
from onebox.notify import (
    CompositeNotifier,
    RecoverableErrorAlerts,
    SlackAlerter,
    build_alerter,
    build_notifier,
)
from onebox.security import FernetCredentialDecryptor, load_accounts
from onebox.storage import SqliteMessageRepository
from onebox.sync import SyncCoordinator, build_session_factory
from onebox.transport import ImapClient

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="OneBox mailbox synchronization")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=["info", "run", "encrypt-password"],
        help="Operation to execute.",
    )
    return parser


def build_classifier(settings: AppSettings) -> Classifier:
    """Return the classifier selected in settings."""
    keyword = KeywordClassifier()
    if settings.classifier.provider == "llm":
        fallback = keyword if settings.llm.fallback_enabled else None
        return LlmClassifier(OllamaClient(settings.llm), fallback=fallback)
    if settings.classifier.provider != "keyword":
        raise ConfigurationError(
            f"Unknown classifier provider '{settings.classifier.provider}'"
        )
    return keyword


def build_coordinator(
    settings: AppSettings,
    repository: SqliteMessageRepository,
    notifier: CompositeNotifier | None = None,
) -> SyncCoordinator:
    """Wire parser, classifier, storage and notifiers into a coordinator."""
    pipeline = IngestionPipeline(
        MessageParser(),
        build_classifier(settings),
        repository,
        notifier,
        body_limit=settings.classifier.body_limit,
        classify_timeout=settings.classifier.timeout_seconds,
        persist_retries=settings.storage.persist_retries,
        max_concurrency=settings.sync.max_concurrent_messages,
    )

    def provider_factory(account: Account) -> ImapClient:
        return ImapClient(account, settings.imap)

    session_factory = build_session_factory(
        pipeline,
        provider_factory,
        imap_settings=settings.imap,
        sync_settings=settings.sync,
    )
    return SyncCoordinator(
        session_factory, shutdown_grace=settings.sync.shutdown_grace_seconds
    )


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return an exit code."""
    command = args.command
    if command == "info":
        print("OneBox is ready. Configure accounts and an encryption key to sync.")
        print(f"Accounts file: {settings.security.accounts_file}")
        print(f"Database path: {settings.storage.db_path}")
        print(f"Backfill window: {settings.sync.backfill_days} day(s)")
        return 0
    try:
        decryptor = FernetCredentialDecryptor.from_settings(settings.security)
        if command == "encrypt-password":
            print(decryptor.encrypt(getpass.getpass("Password: ")))
            return 0
        accounts = load_accounts(settings.security.accounts_file, decryptor)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    asyncio.run(_run_until_signalled(settings, accounts))
    return 0


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


async def _run_until_signalled(settings: AppSettings, accounts: list[Account]) -> None:
    """Run every session until SIGINT or SIGTERM."""
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, shutdown.set)
        except NotImplementedError:  # pragma: no cover - Windows
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(shutdown.set))

    notifier = build_notifier(settings.notifications)
    alerter = build_alerter(settings.notifications)
    alerts = RecoverableErrorAlerts(alerter) if alerter is not None else None
    with SqliteMessageRepository(settings.storage) as repository:
        coordinator = build_coordinator(settings, repository, notifier)
        coordinator.subscribe(_log_recoverable_error)
        if alerts is not None:
            coordinator.subscribe(alerts)
        await coordinator.start(accounts)
        await _send_alert(
            alerter, f"Email synchronization started for {len(accounts)} account(s)"
        )
        try:
            await shutdown.wait()
        finally:
            await coordinator.stop()
            if alerts is not None:
                await alerts.drain()
            await _send_alert(alerter, "Email synchronization stopped")
            if notifier is not None:
                notifier.close()
            if alerter is not None:
                alerter.close()


async def _send_alert(alerter: SlackAlerter | None, text: str) -> None:
    if alerter is None:
        return
    try:
        await asyncio.to_thread(alerter.alert, text, "info")
    except Exception as exc:  # pylint: disable=broad-except
        LOGGER.warning("Slack alert failed: %s", exc)


def _log_recoverable_error(event: SessionEvent) -> None:
    if event.kind == EVENT_RECOVERABLE_ERROR:
        LOGGER.error(
            "Account %s hit a recoverable error in %s: %s",
            event.account_id,
            event.state.value,
            event.error,
        )


if __name__ == "__main__":
    main()
