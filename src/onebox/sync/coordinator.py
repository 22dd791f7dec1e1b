"""Start/stop control surface over all account sessions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from ..core.config import ImapSettings, SyncSettings
from ..core.models import Account, SessionEvent, SessionState
from ..ingestion.pipeline import IngestionPipeline
from .session import ConnectionSession, EventSink, ProviderFactory

LOGGER = logging.getLogger(__name__)

SessionFactory = Callable[
    [Account, int, Callable[[int], bool], EventSink], ConnectionSession
]


@dataclass(slots=True)
class _Entry:
    session: ConnectionSession
    task: asyncio.Task[None]


def build_session_factory(
    pipeline: IngestionPipeline,
    provider_factory: ProviderFactory,
    *,
    imap_settings: ImapSettings | None = None,
    sync_settings: SyncSettings | None = None,
) -> SessionFactory:
    """Return a factory producing sessions that share ``pipeline``."""

    def factory(
        account: Account,
        generation: int,
        is_current: Callable[[int], bool],
        on_event: EventSink,
    ) -> ConnectionSession:
        return ConnectionSession(
            account,
            provider_factory,
            pipeline,
            imap_settings=imap_settings,
            sync_settings=sync_settings,
            generation=generation,
            is_current=is_current,
            on_event=on_event,
        )

    return factory


class SyncCoordinator:
    """Own one :class:`ConnectionSession` per active account.

    ``start`` and ``stop`` are idempotent and serialised by a lock, so
    overlapping calls can never leave a session running unsupervised. Each
    ``start`` opens a new generation; sessions check their generation before
    every reconnect, so a delay scheduled before ``stop`` can never reconnect
    after it, even if ``start`` is called again in between.
    """

    def __init__(
        self, session_factory: SessionFactory, *, shutdown_grace: float = 10.0
    ) -> None:
        """Create an idle coordinator."""
        self._session_factory = session_factory
        self._shutdown_grace = shutdown_grace
        self._lock = asyncio.Lock()
        self._entries: dict[str, _Entry] = {}
        self._observers: list[EventSink] = []
        self._running = False
        self._generation = 0

    @property
    def is_running(self) -> bool:
        """Whether sessions are currently supervised."""
        return self._running

    @property
    def generation(self) -> int:
        """Counter advanced by every start and stop."""
        return self._generation

    def states(self) -> dict[str, SessionState]:
        """Snapshot of each managed account's session state."""
        return {
            account_id: entry.session.state
            for account_id, entry in self._entries.items()
        }

    def subscribe(self, observer: EventSink) -> Callable[[], None]:
        """Register ``observer`` for session events; returns an unsubscribe hook."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def start(self, accounts: Sequence[Account]) -> None:
        """Spawn a session for every active account and return immediately.

        Raises ``TypeError`` or ``ValueError`` for malformed account lists
        before anything is started.
        """
        active = _validate_accounts(accounts)
        async with self._lock:
            if self._running:
                LOGGER.debug("Synchronization already running; start ignored")
                return
            self._generation += 1
            generation = self._generation
            self._running = True
            LOGGER.info(
                "Starting synchronization for %s active account(s) (generation %s)",
                len(active),
                generation,
            )
            for account in active:
                session = self._session_factory(
                    account, generation, self._is_current, self._publish
                )
                task = asyncio.create_task(
                    session.run(), name=f"onebox-session-{account.id}"
                )
                task.add_done_callback(_log_unexpected_exit)
                self._entries[account.id] = _Entry(session=session, task=task)

    async def stop(self) -> None:
        """Stop every session and wait until each has released its connection."""
        async with self._lock:
            if not self._running:
                LOGGER.debug("Synchronization not running; stop ignored")
                return
            self._running = False
            self._generation += 1
            entries = list(self._entries.values())
            self._entries.clear()

            for entry in entries:
                entry.session.request_stop()
            tasks = [entry.task for entry in entries]
            if tasks:
                _, pending = await asyncio.wait(tasks, timeout=self._shutdown_grace)
                for task in pending:
                    LOGGER.warning(
                        "Session %s did not stop within %.1fs; cancelling",
                        task.get_name(),
                        self._shutdown_grace,
                    )
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
            LOGGER.info("Email synchronization stopped")

    def _is_current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    def _publish(self, event: SessionEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Observer failed for event %s", event)


def _validate_accounts(accounts: Sequence[Account]) -> list[Account]:
    if isinstance(accounts, (str, bytes)) or not isinstance(accounts, Sequence):
        raise TypeError("accounts must be a sequence of Account objects")
    seen: set[str] = set()
    active: list[Account] = []
    for account in accounts:
        if not isinstance(account, Account):
            raise TypeError(f"Expected Account, got {type(account).__name__}")
        account.validate()
        if account.id in seen:
            raise ValueError(f"Duplicate account id {account.id}")
        seen.add(account.id)
        if account.active:
            active.append(account)
    return active


def _log_unexpected_exit(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error(
            "Session task %s exited unexpectedly", task.get_name(), exc_info=exc
        )


__all__ = ["SessionFactory", "SyncCoordinator", "build_session_factory"]
