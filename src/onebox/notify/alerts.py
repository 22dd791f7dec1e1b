"""Operational Slack alerts about the sync engine itself."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..core.config import NotificationSettings
from ..core.models import EVENT_RECOVERABLE_ERROR, SessionEvent
from .webhook import _HttpSink

LOGGER = logging.getLogger(__name__)

_LEVEL_EMOJI = {"info": "ℹ️", "warning": "⚠️", "error": "🚨"}


class SlackAlerter(_HttpSink):
    """Post short info, warning or error notes to a Slack incoming webhook."""

    def alert(self, text: str, level: str = "info") -> None:
        """Send ``text`` tagged with ``level``."""
        self._post(build_slack_alert_payload(text, level))
        LOGGER.debug("Slack %s alert sent: %s", level, text)


class RecoverableErrorAlerts:
    """Session observer that forwards recoverable errors to Slack.

    Observers run on the event loop, so each post is handed to a worker
    thread and a failed post is only logged.
    """

    def __init__(self, alerter: SlackAlerter) -> None:
        self._alerter = alerter
        self._pending: set[asyncio.Future[None]] = set()

    def __call__(self, event: SessionEvent) -> None:
        if event.kind != EVENT_RECOVERABLE_ERROR:
            return
        text = (
            f"Account {event.account_id} hit a recoverable error while "
            f"{event.state.value}: {event.error}"
        )
        future = asyncio.get_running_loop().run_in_executor(None, self._send, text)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for alerts that are still being posted."""
        if self._pending:
            await asyncio.gather(*self._pending)

    def _send(self, text: str) -> None:
        try:
            self._alerter.alert(text, "warning")
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Slack alert failed: %s", exc)


def build_slack_alert_payload(text: str, level: str = "info") -> dict[str, Any]:
    """Return the Slack message for an operational alert."""
    try:
        emoji = _LEVEL_EMOJI[level]
    except KeyError as exc:
        raise ValueError(f"Unknown alert level '{level}'") from exc
    return {
        "text": f"{emoji} {text}",
        "blocks": [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"{emoji} *{level.upper()}*\n{text}"},
            }
        ],
    }


def build_alerter(
    settings: NotificationSettings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> SlackAlerter | None:
    """Create the Slack alerter, or ``None`` when alerts are off or unconfigured."""
    url = settings.alert_webhook_url or settings.slack_webhook_url
    if not settings.alerts_enabled or not url:
        return None
    return SlackAlerter(url, timeout=settings.timeout_seconds, transport=transport)


__all__ = [
    "RecoverableErrorAlerts",
    "SlackAlerter",
    "build_alerter",
    "build_slack_alert_payload",
]
