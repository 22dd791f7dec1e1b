"""Tests for the reconnect delay policy."""

from __future__ import annotations

import random

from onebox.core.config import SyncSettings
from onebox.sync import Backoff


def test_delays_grow_exponentially_until_cap() -> None:
    backoff = Backoff(base=1.0, maximum=10.0)

    delays = [backoff.next_delay() for _ in range(6)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert backoff.attempts == 6


def test_delay_stays_capped_after_many_failures() -> None:
    backoff = Backoff(base=1.0, maximum=60.0, attempts=5000)

    assert backoff.next_delay() == 60.0


def test_reset_restarts_sequence() -> None:
    backoff = Backoff(base=0.5, maximum=8.0)
    backoff.next_delay()
    backoff.next_delay()

    backoff.reset()

    assert backoff.attempts == 0
    assert backoff.next_delay() == 0.5


def test_jitter_stays_within_bounds() -> None:
    backoff = Backoff(base=4.0, maximum=60.0, jitter=0.25, _random=random.Random(7))

    for _ in range(50):
        backoff.reset()
        delay = backoff.next_delay()
        assert 3.0 <= delay <= 5.0


def test_from_settings_uses_sync_configuration() -> None:
    settings = SyncSettings(
        reconnect_base_seconds=2.0, reconnect_max_seconds=5.0, reconnect_jitter=0.0
    )

    backoff = Backoff.from_settings(settings)

    assert [backoff.next_delay() for _ in range(3)] == [2.0, 4.0, 5.0]
