"""Provider adapter registry."""

from __future__ import annotations

from spendwatch.core.config import CollectionSettings
from spendwatch.core.exceptions import ProviderRequestError
from spendwatch.core.retry import RetryPolicy

from .base import ProviderAdapter
from .openai import OpenAIProvider


class ProviderRegistry:
    """Builds and caches one adapter per provider id."""

    _adapter_map: dict[str, type[ProviderAdapter]] = {
        "openai": OpenAIProvider,
    }

    def __init__(self, settings: CollectionSettings, retry_policy: RetryPolicy) -> None:
        self._settings = settings
        self._retry = retry_policy
        self._instances: dict[str, ProviderAdapter] = {}

    def providers(self) -> list[str]:
        return sorted(self._adapter_map)

    def get_adapter(self, provider_id: str) -> ProviderAdapter:
        if provider_id not in self._instances:
            adapter_cls = self._adapter_map.get(provider_id)
            if not adapter_cls:
                raise ProviderRequestError(provider_id, message="No adapter configured")
            self._instances[provider_id] = adapter_cls(self._settings, self._retry)
        return self._instances[provider_id]
