from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from spendwatch.api import cron
from spendwatch.collection.collector import CostCollector
from spendwatch.core.config import AppConfig, CollectionSettings
from spendwatch.core.exceptions import ProviderUnavailableError
from spendwatch.core.retry import RetryPolicy
from spendwatch.crypto.envelope import EnvelopeEncryptionService, LocalKeyProvider
from spendwatch.providers.base import CostLine, FetchResult
from spendwatch.storage.costs import count_cost_records
from spendwatch.storage.credentials import CredentialVault
from spendwatch.storage.teams import create_project, create_team

SECRET = "s3cret"
AUTH = f"Bearer {SECRET}"
API_KEY = "sk-admin-0123456789abcdefghijklmnop"


class CountingAdapter:
    provider_id = "openai"
    cost_api_version = "costs_v1"
    usage_api_version = "usage_completions_v1"

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.cost_fetches = 0

    async def fetch_costs(self, api_key, window, provider_project_ids, should_continue=None):
        self.cost_fetches += 1
        if self.error is not None:
            raise self.error
        line = CostLine(
            provider_project_id="proj_a",
            line_item="gpt-4o, input",
            amount=Decimal("4.20"),
            currency="usd",
            bucket_start=window.start,
            bucket_end=window.end,
        )
        return FetchResult(items=[line], pages=1)

    async def fetch_usage(self, api_key, window, provider_project_ids, should_continue=None):
        return FetchResult(items=[], pages=1)


class RecordingAdminNotifier:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def notify_collection_failure(self, error, **kwargs) -> bool:
        self.calls.append({"error": error, **kwargs})
        return True


@pytest.fixture(autouse=True)
def cron_env(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", SECRET)
    monkeypatch.setattr(cron, "record_event", lambda *args, **kwargs: None)


async def _services(adapter) -> SimpleNamespace:
    vault = CredentialVault(EnvelopeEncryptionService(LocalKeyProvider(), RetryPolicy(base_delay=0)))
    team = create_team("Platform")
    await vault.register(team.id, "openai", "org-1", API_KEY)
    create_project(team.id, "Search", provider="openai", organization_id="org-1", provider_project_id="proj_a")

    async def no_sleep(_seconds: float) -> None:
        return None

    collector = CostCollector(
        vault, SimpleNamespace(get_adapter=lambda _: adapter), CollectionSettings(), sleep=no_sleep
    )
    return SimpleNamespace(
        config=AppConfig(),
        collector=collector,
        admin_notifier=RecordingAdminNotifier(),
    )


@pytest.mark.asyncio
async def test_daily_batch_collects_and_reports_counts():
    adapter = CountingAdapter()
    services = await _services(adapter)

    response = await cron.daily_batch(services=services, authorization=AUTH)

    assert response.status_code == 200
    payload = json.loads(response.body)
    assert payload["success"] is True
    assert payload["date"] == datetime.now(timezone.utc).date().isoformat()
    assert payload["recordsCollected"] == 1
    assert payload["recordsCreated"] == 1
    assert payload["usageRecordsCollected"] == 0
    assert "durationMs" in payload
    assert count_cost_records() == 1


@pytest.mark.asyncio
async def test_second_trigger_same_day_is_rejected_without_fetching():
    adapter = CountingAdapter()
    services = await _services(adapter)

    first = await cron.daily_batch(services=services, authorization=AUTH)
    second = await cron.daily_batch(services=services, authorization=AUTH)

    assert first.status_code == 200
    assert second.status_code == 200
    assert json.loads(second.body)["message"] == "Already executed today"
    assert adapter.cost_fetches == 1
    assert count_cost_records() == 1


@pytest.mark.asyncio
async def test_bad_secret_is_unauthorized():
    adapter = CountingAdapter()
    services = await _services(adapter)

    response = await cron.daily_batch(services=services, authorization="Bearer wrong")

    assert response.status_code == 401
    assert json.loads(response.body) == {"error": "Unauthorized"}
    assert adapter.cost_fetches == 0


@pytest.mark.asyncio
async def test_missing_secret_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("CRON_SECRET", raising=False)
    services = await _services(CountingAdapter())

    response = await cron.daily_batch(services=services, authorization=AUTH)

    assert response.status_code == 500
    assert json.loads(response.body) == {"error": "Server configuration error"}


@pytest.mark.asyncio
async def test_total_failure_notifies_admin_and_keeps_the_claim():
    adapter = CountingAdapter(error=ProviderUnavailableError("openai", status_code=503))
    services = await _services(adapter)

    response = await cron.daily_batch(services=services, authorization=AUTH)
    retry = await cron.daily_batch(services=services, authorization=AUTH)

    assert response.status_code == 500
    payload = json.loads(response.body)
    assert payload["success"] is False
    assert "org" in payload["error"]
    [call] = services.admin_notifier.calls
    assert call["failed_organizations"] == ["org-1"]
    assert json.loads(retry.body)["message"] == "Already executed today"
    assert adapter.cost_fetches == 1


@pytest.mark.asyncio
async def test_poll_threshold_counts_delivered_and_failed_alerts():
    breaches = [SimpleNamespace(rule_id=1), SimpleNamespace(rule_id=2)]

    class FakeMonitor:
        def __init__(self) -> None:
            self.fired: list[int] = []

        def check_thresholds(self):
            return breaches

        def record_dispatch(self, breach, outcome) -> bool:
            if outcome.any_succeeded:
                self.fired.append(breach.rule_id)
            return outcome.any_succeeded

    class FakeFanout:
        async def dispatch(self, breach):
            return SimpleNamespace(any_succeeded=breach.rule_id == 1)

    monitor = FakeMonitor()
    services = SimpleNamespace(monitor=monitor, fanout=FakeFanout())

    response = await cron.poll_threshold(services=services, authorization=AUTH)

    payload = json.loads(response.body)
    assert payload["message"] == "Threshold polling completed"
    assert payload["breaches"] == 2
    assert payload["alertsSent"] == 1
    assert payload["alertsFailed"] == 1
    assert monitor.fired == [1]


@pytest.mark.asyncio
async def test_poll_threshold_requires_secret():
    services = SimpleNamespace(monitor=None, fanout=None)

    response = await cron.poll_threshold(services=services, authorization=None)

    assert response.status_code == 401
