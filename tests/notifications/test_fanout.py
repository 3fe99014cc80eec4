from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from spendwatch.core.config import EmailSettings
from spendwatch.core.exceptions import NotificationDeliveryError, NotificationRejectedError
from spendwatch.core.retry import RetryPolicy
from spendwatch.monitoring.threshold import BreachEvent, ThresholdMonitor
from spendwatch.notifications import email as email_module
from spendwatch.notifications import fanout as fanout_module
from spendwatch.notifications import slack as slack_module
from spendwatch.notifications.email import ResendEmailClient
from spendwatch.notifications.fanout import NotificationFanout
from spendwatch.notifications.slack import SlackWebhookNotifier, build_alert_payload
from spendwatch.storage.alerts import create_alert_rule, get_last_fired_at
from spendwatch.storage.teams import TeamAudience, create_project, create_team

FAST = RetryPolicy(max_attempts=2, base_delay=0, max_delay=0)
NOW = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)
WEBHOOK_URL = "https://hooks.example.test/T000/B000"


class FakeResponse:
    def __init__(self, status_code: int, payload: dict | None = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> dict:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _stub_async_client(routes, recorder):
    """Route POSTs by URL prefix to a status code."""

    class _DummyAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            self.timeout = kwargs.get("timeout")

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, json=None, headers=None):
            recorder.append({"url": url, "json": json, "headers": headers})
            for prefix, status in routes.items():
                if url.startswith(prefix):
                    return FakeResponse(status, {"id": f"email-{len(recorder)}"}, text="error")
            raise AssertionError(f"unexpected url {url}")

    return _DummyAsyncClient


def _breach(rule_id: int = 1, project_id: int = 7, team_id: int = 3) -> BreachEvent:
    return BreachEvent(
        rule_id=rule_id,
        project_id=project_id,
        project_name="Search",
        team_id=team_id,
        window_kind="daily",
        current_amount=Decimal("150"),
        limit_value=Decimal("100"),
        exceedance_percent=Decimal("50.00"),
    )


def _fanout(audience: TeamAudience | None, api_key: str | None = "re_test") -> NotificationFanout:
    email = ResendEmailClient(
        EmailSettings(api_base_url="https://email.example.test"), api_key, FAST, timeout=1
    )
    return NotificationFanout(
        SlackWebhookNotifier(FAST, timeout=1),
        email,
        "https://app.example.test/",
        audience_lookup=lambda team_id: audience,
    )


@pytest.fixture(autouse=True)
def quiet_events(monkeypatch):
    monkeypatch.setattr(fanout_module, "record_event", lambda *args, **kwargs: None)


def _patch_http(monkeypatch, routes):
    recorder: list[dict] = []
    client = _stub_async_client(routes, recorder)
    monkeypatch.setattr(slack_module.httpx, "AsyncClient", client)
    monkeypatch.setattr(email_module.httpx, "AsyncClient", client)
    return recorder


def test_webhook_payload_has_summary_section_and_button():
    payload = build_alert_payload(_breach(), "Platform", "https://app.example.test/projects/7")

    assert "Platform" in payload["text"]
    section, actions = payload["blocks"]
    assert section["type"] == "section"
    assert "$150.00" in section["text"]["text"]
    assert "$100.00" in section["text"]["text"]
    assert "50.0%" in section["text"]["text"]
    [button] = actions["elements"]
    assert button["url"] == "https://app.example.test/projects/7"


@pytest.mark.asyncio
async def test_all_channels_are_attempted_concurrently(monkeypatch):
    recorder = _patch_http(monkeypatch, {WEBHOOK_URL: 200, "https://email.example.test": 200})
    audience = TeamAudience(3, "Platform", WEBHOOK_URL, ["a@example.test", "b@example.test"])

    outcome = await _fanout(audience).dispatch(_breach())

    assert outcome.delivered_count == 3
    assert outcome.any_succeeded is True
    email_calls = [call for call in recorder if call["url"].endswith("/emails")]
    assert sorted(call["json"]["to"][0] for call in email_calls) == ["a@example.test", "b@example.test"]
    assert email_calls[0]["headers"]["Authorization"] == "Bearer re_test"
    assert "https://app.example.test/projects/7" in email_calls[0]["json"]["html"]


@pytest.mark.asyncio
async def test_webhook_failure_does_not_block_email(monkeypatch):
    recorder = _patch_http(monkeypatch, {WEBHOOK_URL: 500, "https://email.example.test": 200})
    audience = TeamAudience(3, "Platform", WEBHOOK_URL, ["a@example.test"])

    outcome = await _fanout(audience).dispatch(_breach())

    webhook_result = next(result for result in outcome.results if result.channel == "webhook")
    assert webhook_result.delivered is False
    assert outcome.delivered_count == 1
    assert outcome.any_succeeded is True
    # Transient webhook failures are retried up to the policy limit.
    assert sum(1 for call in recorder if call["url"] == WEBHOOK_URL) == FAST.max_attempts


@pytest.mark.asyncio
async def test_rejected_email_is_not_retried(monkeypatch):
    recorder = _patch_http(monkeypatch, {WEBHOOK_URL: 200, "https://email.example.test": 422})
    audience = TeamAudience(3, "Platform", WEBHOOK_URL, ["a@example.test"])

    outcome = await _fanout(audience).dispatch(_breach())

    email_result = next(result for result in outcome.results if result.channel == "email")
    assert email_result.delivered is False
    assert sum(1 for call in recorder if call["url"].endswith("/emails")) == 1


@pytest.mark.asyncio
async def test_unconfigured_channels_are_skipped(monkeypatch):
    recorder = _patch_http(monkeypatch, {})
    audience = TeamAudience(3, "Platform", None, ["a@example.test"])

    outcome = await _fanout(audience, api_key=None).dispatch(_breach())

    assert outcome.results == []
    assert outcome.any_succeeded is False
    assert recorder == []


@pytest.mark.asyncio
async def test_partial_success_starts_cooldown_and_total_failure_does_not(monkeypatch):
    team = create_team("Platform", slack_webhook_url=WEBHOOK_URL)
    project = create_project(team.id, "Search", provider="openai", organization_id="org-1", provider_project_id="proj_a")
    rule = create_alert_rule(project.id, "daily", "100")
    breach = _breach(rule_id=rule.id, project_id=project.id, team_id=team.id)
    audience = TeamAudience(team.id, "Platform", WEBHOOK_URL, ["a@example.test"])
    monitor = ThresholdMonitor(clock=lambda: NOW)

    _patch_http(monkeypatch, {WEBHOOK_URL: 503, "https://email.example.test": 503})
    outcome = await _fanout(audience).dispatch(breach)
    monitor.record_dispatch(breach, outcome)
    assert outcome.any_succeeded is False
    assert get_last_fired_at(rule.id) is None

    _patch_http(monkeypatch, {WEBHOOK_URL: 503, "https://email.example.test": 200})
    outcome = await _fanout(audience).dispatch(breach)
    monitor.record_dispatch(breach, outcome)
    assert outcome.any_succeeded is True
    assert get_last_fired_at(rule.id) == NOW


@pytest.mark.asyncio
async def test_webhook_errors_are_classified(monkeypatch):
    notifier = SlackWebhookNotifier(RetryPolicy(max_attempts=1, base_delay=0), timeout=1)

    _patch_http(monkeypatch, {WEBHOOK_URL: 429})
    with pytest.raises(NotificationDeliveryError):
        await notifier.send(WEBHOOK_URL, {"text": "hi"})

    _patch_http(monkeypatch, {WEBHOOK_URL: 404})
    with pytest.raises(NotificationRejectedError):
        await notifier.send(WEBHOOK_URL, {"text": "hi"})


@pytest.mark.asyncio
async def test_unusable_webhook_url_is_rejected_without_losing_email(monkeypatch):
    recorder = _patch_http(monkeypatch, {"https://email.example.test": 200})
    bad_url = WEBHOOK_URL + "\n"

    async def post_rejecting_bad_url(self, url, json=None, headers=None):
        if url == bad_url:
            raise httpx.InvalidURL("Invalid non-printable ASCII character in URL")
        return await original_post(self, url, json=json, headers=headers)

    client = slack_module.httpx.AsyncClient
    original_post = client.post
    monkeypatch.setattr(client, "post", post_rejecting_bad_url)
    audience = TeamAudience(3, "Platform", bad_url, ["a@example.test"])

    outcome = await _fanout(audience).dispatch(_breach())

    webhook_result = next(result for result in outcome.results if result.channel == "webhook")
    email_result = next(result for result in outcome.results if result.channel == "email")
    assert webhook_result.delivered is False
    assert "not usable" in webhook_result.error
    assert email_result.delivered is True
    assert outcome.any_succeeded is True
    assert [call["json"]["to"] for call in recorder] == [["a@example.test"]]


@pytest.mark.asyncio
async def test_webhook_bad_scheme_is_not_retried(monkeypatch):
    async def post_unsupported(self, url, json=None, headers=None):
        calls.append(url)
        raise httpx.UnsupportedProtocol("Request URL has an unsupported protocol 'hooks://'")

    calls: list[str] = []
    _patch_http(monkeypatch, {})
    monkeypatch.setattr(slack_module.httpx.AsyncClient, "post", post_unsupported)
    notifier = SlackWebhookNotifier(FAST, timeout=1)

    with pytest.raises(NotificationRejectedError):
        await notifier.send("hooks://example.test", {"text": "hi"})
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_unexpected_channel_error_is_contained(monkeypatch):
    _patch_http(monkeypatch, {WEBHOOK_URL: 200})
    fanout = _fanout(TeamAudience(3, "Platform", WEBHOOK_URL, ["a@example.test"]))

    async def broken_send(to, subject, html):
        raise RuntimeError("template exploded")

    monkeypatch.setattr(fanout._email, "send", broken_send)

    outcome = await fanout.dispatch(_breach())

    email_result = next(result for result in outcome.results if result.channel == "email")
    assert email_result.delivered is False
    assert email_result.error == "RuntimeError"
    assert outcome.delivered_count == 1
