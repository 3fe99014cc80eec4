"""OpenAI organization costs and usage adapter."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Literal, Sequence

import httpx
from pydantic import BaseModel, Field, ValidationError

from spendwatch.collection.records import TokenCounts
from spendwatch.core.exceptions import ProviderRequestError, ProviderUnavailableError

from .base import CollectionWindow, ContinueCheck, CostLine, FetchResult, ProviderAdapter, UsageLine
from .utils import raise_for_provider_status

COSTS_PATH = "/organization/costs"
USAGE_COMPLETIONS_PATH = "/organization/usage/completions"


class OpenAICostAmount(BaseModel):
    value: Decimal
    currency: str = "usd"


class OpenAICostResult(BaseModel):
    object: Literal["organization.costs.result"]
    amount: OpenAICostAmount
    line_item: str | None = None
    project_id: str | None = None


class OpenAICostBucket(BaseModel):
    object: Literal["bucket"]
    start_time: int
    end_time: int
    results: list[OpenAICostResult] = Field(default_factory=list)


class OpenAIUsageResult(BaseModel):
    object: Literal["organization.usage.completions.result"]
    project_id: str | None = None
    model: str | None = None
    num_model_requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    input_cached_tokens: int = 0
    input_uncached_tokens: int = 0
    input_text_tokens: int = 0
    output_text_tokens: int = 0
    input_cached_text_tokens: int = 0
    input_audio_tokens: int = 0
    input_cached_audio_tokens: int = 0
    output_audio_tokens: int = 0
    input_image_tokens: int = 0
    input_cached_image_tokens: int = 0
    output_image_tokens: int = 0


class OpenAIUsageBucket(BaseModel):
    object: Literal["bucket"]
    start_time: int
    end_time: int
    results: list[OpenAIUsageResult] = Field(default_factory=list)


class _OpenAIPage(BaseModel):
    object: Literal["page"]
    has_more: bool = False
    next_page: str | None = None

    @property
    def next_cursor(self) -> str | None:
        return self.next_page if self.has_more and self.next_page else None


class OpenAICostsPage(_OpenAIPage):
    data: list[OpenAICostBucket] = Field(default_factory=list)

    @property
    def buckets(self) -> list[OpenAICostBucket]:
        return self.data


class OpenAIUsagePage(_OpenAIPage):
    data: list[OpenAIUsageBucket] = Field(default_factory=list)

    @property
    def buckets(self) -> list[OpenAIUsageBucket]:
        return self.data


def _to_datetime(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class OpenAIProvider(ProviderAdapter):
    provider_id = "openai"
    cost_api_version = "costs_v1"
    usage_api_version = "usage_completions_v1"

    async def fetch_costs(
        self,
        api_key: str,
        window: CollectionWindow,
        provider_project_ids: Sequence[str],
        should_continue: ContinueCheck | None = None,
    ) -> FetchResult[CostLine]:
        params = self._window_params(window, self._settings.cost_page_limit, provider_project_ids)
        params.append(("group_by", "line_item"))
        params.append(("group_by", "project_id"))

        async def fetch_page(cursor: str | None) -> OpenAICostsPage:
            data = await self._get(COSTS_PATH, params, cursor, api_key)
            return self._parse(OpenAICostsPage, data)

        pages = await self._paginate(fetch_page, label="costs", should_continue=should_continue)

        lines = [
            CostLine(
                provider_project_id=result.project_id or None,
                line_item=result.line_item,
                amount=result.amount.value,
                currency=result.amount.currency,
                bucket_start=_to_datetime(bucket.start_time),
                bucket_end=_to_datetime(bucket.end_time),
            )
            for bucket in pages.items
            for result in bucket.results
        ]
        return FetchResult(
            items=lines,
            pages=pages.pages,
            truncated=pages.truncated,
            stopped_early=pages.stopped_early,
        )

    async def fetch_usage(
        self,
        api_key: str,
        window: CollectionWindow,
        provider_project_ids: Sequence[str],
        should_continue: ContinueCheck | None = None,
    ) -> FetchResult[UsageLine]:
        params = self._window_params(window, self._settings.usage_page_limit, provider_project_ids)
        params.append(("group_by", "project_id"))
        params.append(("group_by", "model"))

        async def fetch_page(cursor: str | None) -> OpenAIUsagePage:
            data = await self._get(USAGE_COMPLETIONS_PATH, params, cursor, api_key)
            return self._parse(OpenAIUsagePage, data)

        pages = await self._paginate(fetch_page, label="usage", should_continue=should_continue)

        lines = [
            UsageLine(
                provider_project_id=result.project_id or None,
                model=result.model or None,
                counts=TokenCounts(
                    num_model_requests=result.num_model_requests,
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                    input_cached_tokens=result.input_cached_tokens,
                    input_uncached_tokens=result.input_uncached_tokens,
                    input_text_tokens=result.input_text_tokens,
                    output_text_tokens=result.output_text_tokens,
                    input_cached_text_tokens=result.input_cached_text_tokens,
                    input_audio_tokens=result.input_audio_tokens,
                    input_cached_audio_tokens=result.input_cached_audio_tokens,
                    output_audio_tokens=result.output_audio_tokens,
                    input_image_tokens=result.input_image_tokens,
                    input_cached_image_tokens=result.input_cached_image_tokens,
                    output_image_tokens=result.output_image_tokens,
                ),
                bucket_start=_to_datetime(bucket.start_time),
                bucket_end=_to_datetime(bucket.end_time),
            )
            for bucket in pages.items
            for result in bucket.results
        ]
        return FetchResult(
            items=lines,
            pages=pages.pages,
            truncated=pages.truncated,
            stopped_early=pages.stopped_early,
        )

    async def validate_api_key(self, api_key: str) -> None:
        """Probe the costs endpoint with a one-bucket request."""
        now = datetime.now(timezone.utc)
        window = CollectionWindow(start=now - timedelta(days=1), end=now)
        params = self._window_params(window, 1, ())
        data = await self._get(COSTS_PATH, params, None, api_key)
        self._parse(OpenAICostsPage, data)

    def _window_params(
        self, window: CollectionWindow, limit: int, provider_project_ids: Sequence[str]
    ) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = [
            ("start_time", str(window.start_unix)),
            ("end_time", str(window.end_unix)),
            ("bucket_width", "1d"),
            ("limit", str(limit)),
        ]
        params.extend(("project_ids", project_id) for project_id in provider_project_ids)
        return params

    async def _get(
        self,
        path: str,
        params: list[tuple[str, str]],
        cursor: str | None,
        api_key: str,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        query = list(params)
        if cursor:
            query.append(("page", cursor))
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with self._client() as client:
                response = await client.get(url, params=query, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailableError(self.provider_id, message="Provider request timed out") from exc
        except httpx.RequestError as exc:
            raise ProviderUnavailableError(self.provider_id, message="Provider request failed") from exc

        raise_for_provider_status(self.provider_id, response)

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderRequestError(self.provider_id, message="Response was not JSON") from exc
        if not isinstance(data, dict):
            raise ProviderRequestError(self.provider_id, message="Unexpected response format")
        return data

    def _parse(self, model: type[BaseModel], data: dict[str, Any]) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise ProviderRequestError(
                self.provider_id, message=f"Unexpected response format: {exc.error_count()} errors"
            ) from exc
