"""Utilities for parsing raw RFC822 messages into structured models."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from bs4 import BeautifulSoup

from ..core.datetime_utils import ensure_utc, utcnow
from ..core.interfaces import ParseError
from ..core.models import AttachmentMeta, Message

# Elements whose text never reaches the reader.
_INVISIBLE_TAGS = ["script", "style", "head", "title", "noscript"]

# Headers that every real message carries at least one of.
_IDENTIFYING_HEADERS = ("From", "Message-ID", "Subject", "Date")


class MessageParser:
    """Convert raw email payloads into :class:`Message` records.

    The parser is pure: it never touches the network or storage, and the
    same payload always produces an equal record (including ``message_id``
    when the header is missing).
    """

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(
        self,
        payload: bytes,
        *,
        account_id: str,
        folder: str,
        received_at: datetime | None = None,
    ) -> Message:
        """Parse raw RFC822 bytes into a :class:`Message`.

        Raises :class:`ParseError` when the payload is empty or does not look
        like an email at all.
        """
        if not payload or not payload.strip():
            raise ParseError("Empty message payload")
        try:
            message = self._parser.parsebytes(payload)
            return self._build(message, payload, account_id, folder, received_at)
        except ParseError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            raise ParseError(f"Malformed message payload: {exc}") from exc

    def _build(
        self,
        message: EmailMessage,
        payload: bytes,
        account_id: str,
        folder: str,
        received_at: datetime | None,
    ) -> Message:
        if not any(message.get(header) for header in _IDENTIFYING_HEADERS):
            raise ParseError("Payload carries no identifying headers")

        message_id = _clean(message.get("Message-ID")) or _synthesize_message_id(
            payload
        )
        raw_from = _clean(message.get("From"))
        sender = _take_first_address(raw_from) or raw_from or ""
        recipients = tuple(
            _extract_addresses(
                [*message.get_all("To", []), *message.get_all("Cc", [])]
            )
        )
        timestamp = _try_parse_datetime(message.get("Date")) or received_at or utcnow()

        body_text, body_html = _extract_bodies(message)
        if body_text is None and body_html is not None:
            body_text = html_to_text(body_html)

        return Message(
            message_id=message_id,
            account_id=account_id,
            sender=sender,
            recipients=recipients,
            subject=_clean(message.get("Subject")) or "",
            body=body_text or "",
            html_body=body_html,
            timestamp=ensure_utc(timestamp),
            folder=folder,
            attachments=tuple(_collect_attachments(message)),
            headers=_collect_headers(message),
        )


def html_to_text(markup: str) -> str:
    """Reduce an HTML body to readable plain text, one block per line."""
    soup = BeautifulSoup(markup, "html.parser")
    for element in soup.find_all(_INVISIBLE_TAGS):
        element.decompose()
    lines = (line.strip() for line in soup.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)


def _clean(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _synthesize_message_id(payload: bytes) -> str:
    digest = hashlib.sha256(payload).hexdigest()[:32]
    return f"<{digest}@onebox.generated>"


def _extract_addresses(headers: Iterable[str]) -> Iterable[str]:
    for _, email_address in getaddresses([str(header) for header in headers]):
        if email_address:
            yield email_address


def _take_first_address(header_value: str | None) -> str | None:
    if header_value is None:
        return None
    addresses = list(_extract_addresses([header_value]))
    return addresses[0] if addresses else None


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        if content_type == "text/plain":
            plain_chunks.append(content)
        else:
            html_chunks.append(content)

    return _collapse_chunks(plain_chunks, "\n\n"), _collapse_chunks(html_chunks, "\n")


def _collect_attachments(message: EmailMessage) -> Iterable[AttachmentMeta]:
    for part in message.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        content_id = _clean(part.get("Content-ID"))
        yield AttachmentMeta(
            filename=part.get_filename(),
            content_type=part.get_content_type(),
            size=len(payload),
            content_id=content_id.strip("<>") if content_id else None,
        )


def _collect_headers(message: EmailMessage) -> dict[str, str]:
    headers: dict[str, str] = {}
    for key, value in message.raw_items():
        headers[key.lower()] = " ".join(str(value).split())
    return headers


def _try_parse_datetime(header_value: object) -> datetime | None:
    if header_value is None:
        return None
    try:
        return parsedate_to_datetime(str(header_value))
    except (TypeError, ValueError):
        return None


__all__ = ["MessageParser", "html_to_text"]
