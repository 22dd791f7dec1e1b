"""Tests for the multi-account start/stop surface."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from onebox.core.config import ImapSettings, SyncSettings
from onebox.core.models import Account, SessionEvent, SessionState
from onebox.ingestion import IngestionPipeline
from onebox.storage import SqliteMessageRepository
from onebox.sync import ConnectionSession, SyncCoordinator, build_session_factory
from onebox.sync.session import EventSink

from helpers import FakeServer, build_email, make_account, wait_until


def _server_for(account_id: str) -> FakeServer:
    return FakeServer(
        {1: build_email(f"<{account_id}-1@example.com>", "Hello", "Checking in")}
    )


class _Harness:
    """Routes each account to its own fake server and sync settings."""

    def __init__(
        self,
        pipeline: IngestionPipeline,
        imap_settings: ImapSettings,
        sync_settings: dict[str, SyncSettings],
    ) -> None:
        self.pipeline = pipeline
        self.imap_settings = imap_settings
        self.sync_settings = sync_settings
        self.servers: dict[str, FakeServer] = {}
        self.sessions: list[ConnectionSession] = []

    def server(self, account_id: str) -> FakeServer:
        if account_id not in self.servers:
            self.servers[account_id] = _server_for(account_id)
        return self.servers[account_id]

    def session_factory(
        self,
        account: Account,
        generation: int,
        is_current: Callable[[int], bool],
        on_event: EventSink,
    ) -> ConnectionSession:
        session = ConnectionSession(
            account,
            self.server(account.id).factory,
            self.pipeline,
            imap_settings=self.imap_settings,
            sync_settings=self.sync_settings[account.id],
            generation=generation,
            is_current=is_current,
            on_event=on_event,
        )
        self.sessions.append(session)
        return session


@pytest.fixture
def harness(
    pipeline: IngestionPipeline,
    fast_imap_settings: ImapSettings,
    fast_sync_settings: SyncSettings,
) -> _Harness:
    slow = SyncSettings(reconnect_base_seconds=30.0, reconnect_jitter=0.0)
    return _Harness(
        pipeline,
        fast_imap_settings,
        {"a1": fast_sync_settings, "a2": slow, "a3": fast_sync_settings},
    )


@pytest.mark.asyncio
async def test_stop_cancels_idle_and_reconnecting_sessions(harness: _Harness) -> None:
    harness.server("a2").connect_failures = 1000
    coordinator = SyncCoordinator(harness.session_factory, shutdown_grace=2.0)

    await coordinator.start([make_account("a1"), make_account("a2")])
    await wait_until(
        lambda: coordinator.states()
        == {"a1": SessionState.IDLE, "a2": SessionState.RECONNECTING}
    )

    await coordinator.stop()
    attempts = {key: server.connect_attempts for key, server in harness.servers.items()}
    await asyncio.sleep(0.2)

    assert coordinator.is_running is False
    assert coordinator.states() == {}
    assert all(server.open_connections == 0 for server in harness.servers.values())
    assert {
        key: server.connect_attempts for key, server in harness.servers.items()
    } == attempts
    assert all(
        session.state is SessionState.DISCONNECTED for session in harness.sessions
    )


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(harness: _Harness) -> None:
    coordinator = SyncCoordinator(harness.session_factory)
    accounts = [make_account("a1")]

    await coordinator.start(accounts)
    await coordinator.start(accounts)
    await wait_until(lambda: coordinator.states() == {"a1": SessionState.IDLE})

    assert len(harness.sessions) == 1
    assert harness.server("a1").connect_attempts == 1

    await coordinator.stop()
    await coordinator.stop()

    assert coordinator.is_running is False
    assert harness.server("a1").open_connections == 0


@pytest.mark.asyncio
async def test_stop_without_start_is_noop(harness: _Harness) -> None:
    coordinator = SyncCoordinator(harness.session_factory)

    await coordinator.stop()

    assert coordinator.is_running is False
    assert coordinator.generation == 0


@pytest.mark.asyncio
async def test_restart_uses_a_new_generation(harness: _Harness) -> None:
    coordinator = SyncCoordinator(harness.session_factory)

    await coordinator.start([make_account("a1")])
    first_generation = coordinator.generation
    await wait_until(lambda: coordinator.states() == {"a1": SessionState.IDLE})
    await coordinator.stop()

    await coordinator.start([make_account("a1")])
    await wait_until(lambda: coordinator.states() == {"a1": SessionState.IDLE})

    assert coordinator.generation > first_generation + 1
    assert [session.generation for session in harness.sessions] == [
        first_generation,
        coordinator.generation,
    ]
    assert harness.sessions[0].state is SessionState.DISCONNECTED

    await coordinator.stop()


@pytest.mark.asyncio
async def test_inactive_accounts_are_skipped(harness: _Harness) -> None:
    coordinator = SyncCoordinator(harness.session_factory)

    await coordinator.start([make_account("a1"), make_account("a3", active=False)])
    await wait_until(lambda: coordinator.states() == {"a1": SessionState.IDLE})

    assert "a3" not in harness.servers

    await coordinator.stop()


@pytest.mark.parametrize(
    ("accounts", "error"),
    [
        ("a1", TypeError),
        (None, TypeError),
        ([{"id": "a1"}], TypeError),
        ([make_account("a1"), make_account("a1")], ValueError),
        ([replace(make_account("a1"), host="")], ValueError),
        ([replace(make_account("a1"), port=0)], ValueError),
    ],
)
@pytest.mark.asyncio
async def test_start_rejects_malformed_accounts(
    harness: _Harness, accounts: object, error: type[Exception]
) -> None:
    coordinator = SyncCoordinator(harness.session_factory)

    with pytest.raises(error):
        await coordinator.start(accounts)  # type: ignore[arg-type]

    assert coordinator.is_running is False
    assert harness.sessions == []


@pytest.mark.asyncio
async def test_observers_receive_session_events(harness: _Harness) -> None:
    coordinator = SyncCoordinator(harness.session_factory)
    received: list[SessionEvent] = []
    unsubscribe = coordinator.subscribe(received.append)

    await coordinator.start([make_account("a1")])
    await wait_until(lambda: coordinator.states() == {"a1": SessionState.IDLE})
    unsubscribe()
    count = len(received)
    await coordinator.stop()

    assert [event.state for event in received[:3]] == [
        SessionState.CONNECTING,
        SessionState.BACKFILLING,
        SessionState.IDLE,
    ]
    assert len(received) == count


class _StubbornSession:
    """Session that ignores stop requests."""

    def __init__(self, account: Account) -> None:
        self.account = account
        self.state = SessionState.IDLE
        self.cancelled = False

    def request_stop(self) -> None:
        return None

    async def run(self) -> None:
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


@pytest.mark.asyncio
async def test_stop_cancels_sessions_exceeding_grace_period() -> None:
    sessions: list[_StubbornSession] = []

    def factory(account, generation, is_current, on_event):
        session = _StubbornSession(account)
        sessions.append(session)
        return session

    coordinator = SyncCoordinator(factory, shutdown_grace=0.05)
    await coordinator.start([make_account("a1")])
    await asyncio.sleep(0)

    await asyncio.wait_for(coordinator.stop(), timeout=1.0)

    assert sessions[0].cancelled is True
    assert coordinator.is_running is False


@pytest.mark.asyncio
async def test_build_session_factory_shares_pipeline(
    pipeline: IngestionPipeline,
    fast_imap_settings: ImapSettings,
    fast_sync_settings: SyncSettings,
) -> None:
    server = _server_for("a1")
    factory = build_session_factory(
        pipeline,
        server.factory,
        imap_settings=fast_imap_settings,
        sync_settings=fast_sync_settings,
    )
    coordinator = SyncCoordinator(factory)

    await coordinator.start([make_account("a1")])
    await wait_until(lambda: coordinator.states() == {"a1": SessionState.IDLE})
    await coordinator.stop()

    assert server.connect_attempts == 1
    assert server.open_connections == 0


@pytest.mark.asyncio
async def test_idle_accounts_do_not_starve_each_other(
    pipeline: IngestionPipeline,
    repository: SqliteMessageRepository,
    fast_sync_settings: SyncSettings,
) -> None:
    shared = ThreadPoolExecutor(max_workers=2)
    asyncio.get_running_loop().set_default_executor(shared)
    accounts = [make_account(f"a{index}") for index in range(8)]
    servers = {account.id: _server_for(account.id) for account in accounts}
    factory = build_session_factory(
        pipeline,
        lambda account: servers[account.id].factory(account),
        imap_settings=ImapSettings(idle_refresh_seconds=600.0),
        sync_settings=fast_sync_settings,
    )
    coordinator = SyncCoordinator(factory)

    await coordinator.start(accounts)
    try:
        await wait_until(
            lambda: set(coordinator.states().values()) == {SessionState.IDLE}
            and len(coordinator.states()) == len(accounts)
        )

        servers["a7"].deliver(
            2, build_email("<late@example.com>", "Re: pricing", "Send the quote")
        )

        await wait_until(
            lambda: repository.fetch_message("<late@example.com>", "a7") is not None
        )
        assert servers["a7"].pushes == 1
    finally:
        await coordinator.stop()
        shared.shutdown(wait=True)
