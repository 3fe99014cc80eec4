from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from spendwatch.storage.cron import claim_cron_run, get_cron_execution
from spendwatch.storage.throttle import DatabaseThrottleStore, InMemoryThrottleStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
WINDOW = timedelta(hours=1)


def test_cron_run_can_only_be_claimed_once_per_day():
    assert claim_cron_run("daily-batch", "2026-03-02") is True
    assert claim_cron_run("daily-batch", "2026-03-02") is False
    assert claim_cron_run("daily-batch", "2026-03-03") is True
    assert claim_cron_run("poll-threshold", "2026-03-02") is True

    assert get_cron_execution("daily-batch", "2026-03-02") is not None
    assert get_cron_execution("daily-batch", "2026-03-04") is None


@pytest.mark.parametrize("store_factory", [DatabaseThrottleStore, InMemoryThrottleStore])
def test_throttle_window(store_factory):
    store = store_factory()
    key = "cost-collection-failure-2026-03-02"

    assert store.should_throttle(key, WINDOW, now=NOW) is False

    store.record_sent(key, now=NOW)

    assert store.should_throttle(key, WINDOW, now=NOW + timedelta(minutes=30)) is True
    assert store.should_throttle(key, WINDOW, now=NOW + timedelta(minutes=90)) is False
    assert store.should_throttle("other-key", WINDOW, now=NOW) is False
