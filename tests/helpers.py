"""Builders and fake collaborators shared by the tests."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Sequence
from datetime import datetime
from email.message import EmailMessage
from email.utils import format_datetime

from onebox.core.interfaces import ImapError
from onebox.core.models import Account, Message, RawFetchResult


def build_email(
    message_id: str | None,
    subject: str,
    body: str,
    *,
    sender: str = "Prospect <prospect@example.com>",
    to: str = "sales@example.com",
    date: datetime | None = None,
) -> bytes:
    """Return RFC822 bytes for a simple plain-text email."""
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    if message_id is not None:
        message["Message-ID"] = message_id
    if date is not None:
        message["Date"] = format_datetime(date)
    message.set_content(body)
    return message.as_bytes()


def make_account(account_id: str = "a1", *, active: bool = True) -> Account:
    return Account(
        id=account_id,
        address=f"{account_id}@example.com",
        host="imap.example.com",
        port=993,
        username=f"{account_id}@example.com",
        credential="secret",
        active=active,
    )


class FakeServer:
    """In-memory mailbox shared by every connection attempt for one account."""

    def __init__(self, messages: dict[int, bytes] | None = None) -> None:
        self.messages: dict[int, bytes] = dict(messages or {})
        self.unseen: set[int] = set()
        self.connect_failures = 0
        self.idle_failures = 0
        self.connect_attempts = 0
        self.providers: list[FakeMailbox] = []
        self.pushes = 0
        # When set, connect or fetch blocks until the gate opens.
        self.connect_gate: threading.Event | None = None
        self.fetch_gate: threading.Event | None = None
        self.blocked = threading.Event()
        self._lock = threading.Lock()

    def deliver(self, uid: int, payload: bytes) -> None:
        """Add a new unseen message and wake any IDLE waiter."""
        with self._lock:
            self.messages[uid] = payload
            self.unseen.add(uid)
            providers = list(self.providers)
        for provider in providers:
            provider.push.set()

    def factory(self, account: Account) -> FakeMailbox:
        provider = FakeMailbox(self, account)
        with self._lock:
            self.providers.append(provider)
        return provider

    @property
    def open_connections(self) -> int:
        return sum(1 for provider in self.providers if provider.connected)


class FakeMailbox:
    """Blocking mailbox provider backed by a :class:`FakeServer`."""

    def __init__(self, server: FakeServer, account: Account) -> None:
        self.server = server
        self.account = account
        self.mailbox = "INBOX"
        self.connected = False
        self.closed = False
        self.interrupted = False
        self.abandoned = False
        self.push = threading.Event()

    def connect(self) -> None:
        self.server.connect_attempts += 1
        gate = self.server.connect_gate
        if gate is not None:
            self.server.blocked.set()
            gate.wait(5.0)
            if self.closed:
                self.abandoned = True
                raise ImapError("closed while connecting")
        if self.server.connect_failures > 0:
            self.server.connect_failures -= 1
            raise ImapError("connection refused")
        self.connected = True

    def search_since(self, since: datetime) -> Sequence[int]:
        del since
        return sorted(self.server.messages)

    def search_unseen(self) -> Sequence[int]:
        return sorted(self.server.unseen)

    def fetch(self, uids: Sequence[int]) -> list[RawFetchResult]:
        gate = self.server.fetch_gate
        if gate is not None:
            self.server.blocked.set()
            while not gate.wait(0.01):
                if self.interrupted:
                    raise ImapError("interrupted")
        return [RawFetchResult(uid=uid, raw=self.server.messages[uid]) for uid in uids]

    def wait_for_push(self, timeout: float) -> bool:
        if self.server.idle_failures > 0:
            self.server.idle_failures -= 1
            raise ImapError("connection closed by peer")
        fired = self.push.wait(timeout)
        if self.interrupted:
            raise ImapError("interrupted")
        if fired:
            self.push.clear()
            self.server.pushes += 1
        return fired

    def keepalive(self) -> None:
        return None

    def interrupt(self) -> None:
        self.interrupted = True
        self.push.set()

    def close(self) -> None:
        self.connected = False
        self.closed = True


class RecordingNotifier:
    """Notifier capturing every call."""

    def __init__(self, *, fail: bool = False) -> None:
        self.calls: list[tuple[Message, Account]] = []
        self._fail = fail
        self._lock = threading.Lock()

    def notify(self, message: Message, account: Account) -> None:
        with self._lock:
            self.calls.append((message, account))
        if self._fail:
            raise RuntimeError("webhook unavailable")


async def wait_until(
    predicate: Callable[[], bool], *, timeout: float = 3.0, interval: float = 0.01
) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


