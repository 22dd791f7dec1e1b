"""Connection lifecycle for a single mailbox account."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, TypeVar

from ..core.config import ImapSettings, SyncSettings
from ..core.datetime_utils import utcnow
from ..core.interfaces import ImapError, MailboxProvider
from ..core.models import (
    EVENT_MESSAGE_INGESTED,
    EVENT_RECOVERABLE_ERROR,
    EVENT_STATE_CHANGED,
    Account,
    IngestionReport,
    Message,
    SessionEvent,
    SessionState,
)
from ..ingestion.pipeline import IngestionPipeline
from .backoff import Backoff

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ProviderFactory = Callable[[Account], MailboxProvider]
EventSink = Callable[[SessionEvent], None]


class SessionStopped(Exception):
    """Raised inside a session when its stop signal fires."""


class ConnectionSession:
    """Own one account's IMAP connection and drive it through its states.

    ``Disconnected -> Connecting -> Backfilling -> Idle``; a push while idle
    runs an unseen-only fetch and returns to ``Idle``; any failure drops to
    ``Reconnecting`` and, after a capped exponential delay, back to
    ``Connecting``. Only :meth:`request_stop` (or a stale generation) ends the
    loop, and the connection handle is always closed on the way out.

    Blocking provider calls run on a single worker thread owned by the
    current connection, so a long IDLE wait never occupies a thread that
    another account or the ingestion pipeline needs.
    """

    def __init__(
        self,
        account: Account,
        provider_factory: ProviderFactory,
        pipeline: IngestionPipeline,
        *,
        imap_settings: ImapSettings | None = None,
        sync_settings: SyncSettings | None = None,
        generation: int = 0,
        is_current: Callable[[int], bool] | None = None,
        on_event: EventSink | None = None,
        backoff: Backoff | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        # pylint: disable=too-many-arguments
        """Prepare the session; nothing touches the network until :meth:`run`."""
        self._account = account
        self._provider_factory = provider_factory
        self._pipeline = pipeline
        self._imap = imap_settings or ImapSettings()
        self._sync = sync_settings or SyncSettings()
        self._generation = generation
        self._is_current = is_current or (lambda _generation: True)
        self._on_event = on_event
        self._backoff = backoff or Backoff.from_settings(self._sync)
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._provider: MailboxProvider | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._state = SessionState.DISCONNECTED
        self.report = IngestionReport()

    @property
    def account(self) -> Account:
        """Account this session serves."""
        return self._account

    @property
    def generation(self) -> int:
        """Coordinator generation the session was started under."""
        return self._generation

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._state

    @property
    def stopping(self) -> bool:
        """Whether a stop has been requested or the generation went stale."""
        return self._stop_event.is_set() or not self._is_current(self._generation)

    def request_stop(self) -> None:
        """Signal the loop to finish and unblock any pending IDLE read."""
        if self._stop_event.is_set():
            return
        LOGGER.debug("Stop requested for account %s", self._account.id)
        self._stop_event.set()
        provider = self._provider
        if provider is not None:
            provider.interrupt()

    async def run(self) -> None:
        """Run the connection loop until stopped."""
        account_id = self._account.id
        LOGGER.info("Session started for account %s", account_id)
        try:
            while not self.stopping:
                await self._connect_and_serve()
                if self.stopping:
                    break
                self._set_state(SessionState.RECONNECTING)
                delay = self._backoff.next_delay()
                LOGGER.info(
                    "Reconnecting account %s in %.1fs (attempt %s)",
                    account_id,
                    delay,
                    self._backoff.attempts,
                )
                if await self._wait_for_stop(delay):
                    break
        finally:
            self._set_state(SessionState.DISCONNECTED)
            LOGGER.info("Session stopped for account %s", account_id)

    # Lifecycle ---------------------------------------------------------------
    async def _connect_and_serve(self) -> None:
        self._set_state(SessionState.CONNECTING)
        try:
            provider = self._provider_factory(self._account)
        except Exception as exc:  # pylint: disable=broad-except
            self._emit_error(exc)
            return
        self._provider = provider
        executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"onebox-{self._account.id}"
        )
        self._executor = executor
        try:
            await self._call(
                provider,
                provider.connect,
                timeout=self._imap.connect_timeout_seconds
                + self._imap.auth_timeout_seconds,
            )
            LOGGER.info("IMAP connection ready for account %s", self._account.id)
            self._set_state(SessionState.BACKFILLING)
            await self._sync_mailbox(provider, unseen_only=False)
            self._backoff.reset()
            await self._serve_idle(provider)
        except SessionStopped:
            LOGGER.debug("Session for account %s interrupted by stop", self._account.id)
        except Exception as exc:  # pylint: disable=broad-except
            if not self.stopping:
                self._emit_error(exc)
        finally:
            self._provider = None
            self._executor = None
            # An abandoned call may still hold the worker until its socket dies.
            executor.shutdown(wait=False, cancel_futures=True)
            await self._release(provider)

    async def _serve_idle(self, provider: MailboxProvider) -> None:
        refresh = self._imap.idle_refresh_seconds
        while True:
            self._set_state(SessionState.IDLE)
            pushed = await self._call(
                provider,
                provider.wait_for_push,
                refresh,
                timeout=refresh + self._imap.fetch_timeout_seconds,
            )
            if pushed:
                LOGGER.info("New mail signalled for account %s", self._account.id)
                self._set_state(SessionState.BACKFILLING)
                await self._sync_mailbox(provider, unseen_only=True)
            else:
                await self._call(
                    provider,
                    provider.keepalive,
                    timeout=self._imap.fetch_timeout_seconds,
                )

    async def _sync_mailbox(
        self, provider: MailboxProvider, *, unseen_only: bool
    ) -> IngestionReport:
        timeout = self._imap.fetch_timeout_seconds
        if unseen_only:
            uids = await self._call(provider, provider.search_unseen, timeout=timeout)
        else:
            since = self._clock() - timedelta(days=self._sync.backfill_days)
            uids = await self._call(
                provider, provider.search_since, since, timeout=timeout
            )
        LOGGER.info(
            "Found %s %s message(s) for account %s",
            len(uids),
            "unseen" if unseen_only else "recent",
            self._account.id,
        )

        cycle = IngestionReport()
        for chunk in _chunked(uids, self._sync.batch_size):
            raws = await self._call(provider, provider.fetch, chunk, timeout=timeout)
            cycle.merge(
                await self._pipeline.process_batch(
                    self._account,
                    raws,
                    provider.mailbox,
                    on_ingested=self._announce_ingested,
                )
            )
            if self.stopping:
                raise SessionStopped()
        self.report.merge(cycle)
        return cycle

    async def _release(self, provider: MailboxProvider) -> None:
        try:
            await asyncio.to_thread(provider.close)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.debug(
                "Ignoring close failure for account %s: %s", self._account.id, exc
            )

    # Suspension helpers ------------------------------------------------------
    async def _call(
        self,
        provider: MailboxProvider,
        func: Callable[..., T],
        *args: Any,
        timeout: float,
    ) -> T:
        """Run a blocking provider call, abandoning it on stop or timeout."""
        if self.stopping:
            raise SessionStopped()
        work = asyncio.get_running_loop().run_in_executor(self._executor, func, *args)
        stop = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            provider.interrupt()
            work.add_done_callback(_consume_result)
            raise
        finally:
            stop.cancel()

        if work in done:
            return work.result()

        provider.interrupt()
        work.add_done_callback(_consume_result)
        if self.stopping:
            raise SessionStopped()
        name = getattr(func, "__name__", "call")
        raise ImapError(f"{name} timed out after {timeout:.0f}s")

    async def _wait_for_stop(self, delay: float) -> bool:
        """Sleep ``delay`` seconds unless stopped first; return ``True`` on stop."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return self.stopping
        return True

    # Events ------------------------------------------------------------------
    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        LOGGER.debug(
            "Account %s: %s -> %s", self._account.id, self._state.value, state.value
        )
        self._state = state
        self._publish(SessionEvent(self._account.id, EVENT_STATE_CHANGED, state))

    def _announce_ingested(self, message: Message) -> None:
        self._publish(
            SessionEvent(
                self._account.id,
                EVENT_MESSAGE_INGESTED,
                self._state,
                message_id=message.message_id,
                category=message.category,
            )
        )

    def _emit_error(self, exc: BaseException) -> None:
        LOGGER.warning(
            "Recoverable error for account %s in state %s: %s",
            self._account.id,
            self._state.value,
            exc,
        )
        self._publish(
            SessionEvent(self._account.id, EVENT_RECOVERABLE_ERROR, self._state, exc)
        )

    def _publish(self, event: SessionEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Session event observer failed for %s", event.account_id)


def _consume_result(task: asyncio.Future[Any]) -> None:
    """Retrieve the outcome of an abandoned call so it is never reported."""
    if not task.cancelled():
        task.exception()


def _chunked(items: Sequence[int], size: int) -> list[Sequence[int]]:
    return [items[index : index + size] for index in range(0, len(items), size)]


__all__ = ["ConnectionSession", "ProviderFactory", "SessionStopped"]
