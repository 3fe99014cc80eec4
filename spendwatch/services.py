"""Process-wide service graph, built once at startup."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from fastapi import Request

from spendwatch.collection.collector import CostCollector
from spendwatch.core.config import AppConfig, get_email_api_key
from spendwatch.core.retry import RetryPolicy
from spendwatch.crypto.envelope import EnvelopeEncryptionService, build_key_provider
from spendwatch.monitoring.threshold import ThresholdMonitor
from spendwatch.notifications.admin import AdminNotifier
from spendwatch.notifications.email import ResendEmailClient
from spendwatch.notifications.fanout import NotificationFanout
from spendwatch.notifications.slack import SlackWebhookNotifier
from spendwatch.providers.registry import ProviderRegistry
from spendwatch.storage.credentials import CredentialVault
from spendwatch.storage.throttle import DatabaseThrottleStore


@dataclass
class Services:
    config: AppConfig
    encryption: EnvelopeEncryptionService
    vault: CredentialVault
    registry: ProviderRegistry
    collector: CostCollector
    monitor: ThresholdMonitor
    fanout: NotificationFanout
    admin_notifier: AdminNotifier


def build_services(config: AppConfig) -> Services:
    retry_policy = RetryPolicy.from_settings(config.retry)
    encryption = EnvelopeEncryptionService(build_key_provider(config.kms), retry_policy)
    vault = CredentialVault(encryption)
    registry = ProviderRegistry(config.collection, retry_policy)

    timeout = config.alerts.notification_timeout_seconds
    email = ResendEmailClient(config.email, get_email_api_key(), retry_policy, timeout)
    fanout = NotificationFanout(
        SlackWebhookNotifier(retry_policy, timeout),
        email,
        config.alerts.dashboard_base_url,
    )

    return Services(
        config=config,
        encryption=encryption,
        vault=vault,
        registry=registry,
        collector=CostCollector(vault, registry, config.collection),
        monitor=ThresholdMonitor(cooldown=timedelta(minutes=config.alerts.cooldown_minutes)),
        fanout=fanout,
        admin_notifier=AdminNotifier(email, config.email, DatabaseThrottleStore()),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
