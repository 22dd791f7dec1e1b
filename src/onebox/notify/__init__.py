"""Notification sinks for interested messages and operational alerts."""

from .alerts import (
    RecoverableErrorAlerts,
    SlackAlerter,
    build_alerter,
    build_slack_alert_payload,
)
from .webhook import (
    CompositeNotifier,
    SlackNotifier,
    WebhookNotifier,
    build_notifier,
    build_slack_payload,
    build_webhook_payload,
)

__all__ = [
    "CompositeNotifier",
    "RecoverableErrorAlerts",
    "SlackAlerter",
    "SlackNotifier",
    "WebhookNotifier",
    "build_alerter",
    "build_notifier",
    "build_slack_alert_payload",
    "build_slack_payload",
    "build_webhook_payload",
]
