"""HTTP notification sinks for interested messages."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from types import TracebackType
from typing import Any

import httpx

from ..core.config import NotificationSettings
from ..core.datetime_utils import serialize_datetime, utcnow
from ..core.interfaces import NotificationError, Notifier
from ..core.models import Account, Message

LOGGER = logging.getLogger(__name__)

SOURCE_NAME = "onebox-email-aggregator"
SOURCE_VERSION = "1.0.0"
USER_AGENT = "OneBox-Email-Aggregator/1.0"

SLACK_PREVIEW_CHARS = 300
WEBHOOK_BODY_CHARS = 500


class _HttpSink:
    """Shared httpx client handling for JSON-posting sinks."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("A destination URL is required")
        self._url = url
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )

    def __enter__(self) -> _HttpSink:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        self._client.close()

    def _post(self, payload: dict[str, Any]) -> httpx.Response:
        try:
            response = self._client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationError(f"POST to {self._url} failed: {exc}") from exc
        return response


class SlackNotifier(_HttpSink, Notifier):
    """Post an alert to a Slack incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        *,
        app_url: str = "http://localhost:3000",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(webhook_url, timeout=timeout, transport=transport)
        self._app_url = app_url.rstrip("/")

    def notify(self, message: Message, account: Account) -> None:
        """Send a Block Kit summary of ``message``."""
        self._post(build_slack_payload(message, account, app_url=self._app_url))
        LOGGER.info("Slack notification sent for %s", message.message_id)


class WebhookNotifier(_HttpSink, Notifier):
    """POST a JSON event describing the interested message."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(url, timeout=timeout, transport=transport)
        self._clock = clock

    def notify(self, message: Message, account: Account) -> None:
        """Deliver the ``email_interested`` event."""
        payload = build_webhook_payload(message, account, now=self._clock())
        response = self._post(payload)
        LOGGER.info(
            "Webhook triggered for %s: HTTP %s", message.message_id, response.status_code
        )


class CompositeNotifier(Notifier):
    """Fan a notification out to several sinks, isolating their failures."""

    def __init__(self, sinks: Sequence[Notifier]) -> None:
        self._sinks = tuple(sinks)

    @property
    def sinks(self) -> tuple[Notifier, ...]:
        """Configured sinks in delivery order."""
        return self._sinks

    def notify(self, message: Message, account: Account) -> None:
        """Try every sink; raise once at the end if any of them failed."""
        failures: list[str] = []
        for sink in self._sinks:
            try:
                sink.notify(message, account)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.warning(
                    "Notifier %s failed for %s: %s",
                    type(sink).__name__,
                    message.message_id,
                    exc,
                )
                failures.append(f"{type(sink).__name__}: {exc}")
        if failures:
            raise NotificationError("; ".join(failures))

    def close(self) -> None:
        """Close sinks that hold resources."""
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if callable(close):
                close()


def build_slack_payload(
    message: Message, account: Account, *, app_url: str
) -> dict[str, Any]:
    """Return the Slack Block Kit message for an interested email."""
    preview = _truncate(message.body, SLACK_PREVIEW_CHARS)
    return {
        "text": f"New interested email from {message.sender}",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "New Interested Email Alert!"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*From:* {message.sender}"},
                    {"type": "mrkdwn", "text": f"*Account:* {account.address}"},
                    {"type": "mrkdwn", "text": f"*Subject:* {message.subject}"},
                    {"type": "mrkdwn", "text": f"*Date:* {_display(message.timestamp)}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Preview:*\n{preview}"},
            },
            {"type": "divider"},
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "*Quick Actions:*"},
                "accessory": {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "View in OneBox"},
                    "url": f"{app_url}?email={message.id}",
                    "action_id": "view_email",
                },
            },
        ],
    }


def build_webhook_payload(
    message: Message, account: Account, *, now: datetime
) -> dict[str, Any]:
    """Return the JSON body for the ``email_interested`` webhook event."""
    return {
        "event": "email_interested",
        "timestamp": serialize_datetime(now),
        "email": {
            "id": message.id,
            "messageId": message.message_id,
            "from": message.sender,
            "to": list(message.recipients),
            "subject": message.subject,
            "body": message.body[:WEBHOOK_BODY_CHARS],
            "category": message.category.value,
            "date": serialize_datetime(message.timestamp),
            "account": {"id": account.id, "email": account.address},
        },
        "metadata": {"source": SOURCE_NAME, "version": SOURCE_VERSION},
    }


def build_notifier(
    settings: NotificationSettings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> CompositeNotifier | None:
    """Create the sinks enabled in ``settings``; ``None`` when none are configured."""
    sinks: list[Notifier] = []
    if settings.slack_webhook_url:
        sinks.append(
            SlackNotifier(
                settings.slack_webhook_url,
                app_url=settings.app_url,
                timeout=settings.timeout_seconds,
                transport=transport,
            )
        )
    if settings.webhook_url:
        sinks.append(
            WebhookNotifier(
                settings.webhook_url,
                timeout=settings.timeout_seconds,
                transport=transport,
            )
        )
    if not sinks:
        LOGGER.warning("No notification sinks configured; alerts are disabled")
        return None
    return CompositeNotifier(sinks)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def _display(value: datetime) -> str:
    return value.strftime("%b %d, %Y %I:%M %p %Z").strip()


__all__ = [
    "CompositeNotifier",
    "SlackNotifier",
    "WebhookNotifier",
    "build_notifier",
    "build_slack_payload",
    "build_webhook_payload",
]
