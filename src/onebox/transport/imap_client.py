"""IMAP transport adapter providing mailbox access for one account."""

from __future__ import annotations

import imaplib
import logging
import socket
import ssl
import threading
from collections.abc import Sequence
from datetime import datetime
from types import TracebackType

from imap_tools import AND, MailBox
from imap_tools.errors import ImapToolsError, MailboxLoginError

from ..core.config import ImapSettings
from ..core.interfaces import ImapError, MailboxProvider
from ..core.models import Account, RawFetchResult

LOGGER = logging.getLogger(__name__)

# Untagged IDLE responses that mean new mail arrived.
_PUSH_MARKERS = (b"EXISTS", b"RECENT")

_TRANSPORT_ERRORS = (imaplib.IMAP4.error, ImapToolsError, OSError, ssl.SSLError)


class ImapClient(MailboxProvider):
    """Blocking TLS connection to a single account's mailbox.

    Built on ``imap_tools.MailBox`` for login and IDLE handling; searches and
    fetches go through the underlying ``imaplib`` client so payloads are
    retrieved byte for byte with ``BODY.PEEK[]`` and flags stay untouched.
    """

    def __init__(
        self,
        account: Account,
        settings: ImapSettings,
        *,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        """Initialise the client for ``account`` without connecting."""
        self._account = account
        self._settings = settings
        self._ssl_context = ssl_context or ssl.create_default_context()
        self._mailbox: MailBox | None = None
        self._lock = threading.Lock()
        self._closed = False
        self.mailbox = settings.mailbox

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapClient:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.close()

    # Public API ---------------------------------------------------------------
    def connect(self) -> None:
        """Establish a TLS connection, log in and select the mailbox."""
        if self._mailbox is not None:
            return
        if self._closed:
            raise ImapError("Client has been closed")

        account = self._account
        LOGGER.debug(
            "Connecting to IMAP host %s:%s via TLS for account %s",
            account.host,
            account.port,
            account.id,
        )
        try:
            mailbox = MailBox(
                account.host,
                port=account.port,
                timeout=self._settings.connect_timeout_seconds,
                ssl_context=self._ssl_context,
            )
        except _TRANSPORT_ERRORS as exc:
            raise ImapError(
                f"Failed to connect to {account.host}:{account.port}"
            ) from exc

        try:
            mailbox.client.sock.settimeout(self._settings.auth_timeout_seconds)
            LOGGER.debug("Authenticating as %s", account.username)
            mailbox.login(account.username, account.credential, initial_folder=None)
            mailbox.folder.set(self.mailbox, readonly=False)
            mailbox.client.sock.settimeout(self._settings.fetch_timeout_seconds)
        except MailboxLoginError as exc:
            _shutdown_quietly(mailbox)
            raise ImapError(f"Authentication failed for {account.username}") from exc
        except _TRANSPORT_ERRORS as exc:
            _shutdown_quietly(mailbox)
            raise ImapError(
                f"Unable to open mailbox '{self.mailbox}' for account {account.id}"
            ) from exc

        with self._lock:
            abandoned = self._closed
            if not abandoned:
                self._mailbox = mailbox
        if abandoned:
            _shutdown_quietly(mailbox)
            raise ImapError(
                f"Connection for account {account.id} closed while connecting"
            )

    def search_since(self, since: datetime) -> Sequence[int]:
        """Return UIDs of messages whose internal date is on or after ``since``."""
        return self._search(str(AND(date_gte=since.date())))

    def search_unseen(self) -> Sequence[int]:
        """Return UIDs of unseen messages."""
        return self._search(str(AND(seen=False)))

    def fetch(self, uids: Sequence[int]) -> list[RawFetchResult]:
        """Fetch raw payloads for ``uids`` without setting ``\\Seen``."""
        results: list[RawFetchResult] = []
        for uid in uids:
            payload = self._fetch_one(uid)
            if payload is None:
                LOGGER.warning("No payload returned for UID %s", uid)
                continue
            results.append(RawFetchResult(uid=uid, raw=payload))
        return results

    def wait_for_push(self, timeout: float) -> bool:
        """Enter IDLE and block until new mail arrives or ``timeout`` expires."""
        mailbox = self._require_mailbox()
        try:
            responses = mailbox.idle.wait(timeout=timeout)
        except _TRANSPORT_ERRORS as exc:
            raise ImapError("IDLE wait failed") from exc
        pushed = any(
            marker in response for response in responses for marker in _PUSH_MARKERS
        )
        if responses:
            LOGGER.debug("IDLE responses for %s: %s", self._account.id, responses)
        return pushed

    def keepalive(self) -> None:
        """Send a NOOP to keep the connection warm."""
        mailbox = self._require_mailbox()
        try:
            status, _ = mailbox.client.noop()
        except _TRANSPORT_ERRORS as exc:
            raise ImapError("NOOP failed") from exc
        if status != "OK":
            raise ImapError("Server rejected NOOP")

    def interrupt(self) -> None:
        """Shut the socket down so a blocked reader returns immediately."""
        mailbox = self._mailbox
        if mailbox is None:
            return
        try:
            mailbox.client.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            LOGGER.debug("Socket already closed for account %s", self._account.id)

    def close(self) -> None:
        """Terminate the IMAP session, always dropping the handle."""
        with self._lock:
            self._closed = True
            mailbox, self._mailbox = self._mailbox, None
        if mailbox is None:
            return
        try:
            LOGGER.debug("Logging out of IMAP for account %s", self._account.id)
            mailbox.logout()
        except _TRANSPORT_ERRORS:  # pragma: no cover - depends on server state
            LOGGER.debug("IMAP logout raised; closing socket directly")
            _shutdown_quietly(mailbox)

    # Internal helpers ---------------------------------------------------------
    def _search(self, criteria: str) -> list[int]:
        mailbox = self._require_mailbox()
        LOGGER.debug("Searching %s with %s", self.mailbox, criteria)
        try:
            status, data = mailbox.client.uid(
                "SEARCH", None, criteria  # type: ignore[arg-type]
            )
        except _TRANSPORT_ERRORS as exc:
            raise ImapError(f"Search failed: {criteria}") from exc
        if status != "OK":
            raise ImapError(f"Search rejected by server: {criteria}")
        raw_ids = data[0].split() if data and data[0] else []
        return [int(raw_id) for raw_id in raw_ids]

    def _fetch_one(self, uid: int) -> bytes | None:
        mailbox = self._require_mailbox()
        uid_str = str(uid)
        LOGGER.debug("Fetching payload for UID %s", uid_str)
        try:
            status, fetch_data = mailbox.client.uid("FETCH", uid_str, "(BODY.PEEK[])")
        except _TRANSPORT_ERRORS as exc:
            raise ImapError(f"Fetch failed for UID {uid_str}") from exc
        if status != "OK":
            raise ImapError(f"Failed to fetch message UID {uid_str}")
        return _extract_payload(fetch_data)

    def _require_mailbox(self) -> MailBox:
        if self._mailbox is None:
            raise ImapError("IMAP connection has not been established")
        return self._mailbox


def _shutdown_quietly(mailbox: MailBox) -> None:
    try:
        mailbox.client.shutdown()
    except OSError:  # pragma: no cover - best effort during teardown
        LOGGER.debug("Socket shutdown raised; ignoring")


def _extract_payload(fetch_data: list[tuple[bytes, bytes] | bytes]) -> bytes | None:
    """Extract the message literal from ``imaplib`` response chunks."""
    for entry in fetch_data:
        if isinstance(entry, tuple) and len(entry) == 2:
            return entry[1]
    return None


__all__ = ["ImapClient", "ImapError"]
