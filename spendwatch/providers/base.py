"""Provider adapter interfaces and shared pagination."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Generic, Protocol, Sequence, TypeVar

import httpx

from spendwatch.collection.records import TokenCounts
from spendwatch.core.config import CollectionSettings
from spendwatch.core.retry import RetryPolicy, retry_async

logger = logging.getLogger("spendwatch.providers")

BucketT = TypeVar("BucketT")


@dataclass(frozen=True)
class CollectionWindow:
    """Half-open ``[start, end)`` interval sent to the provider."""

    start: datetime
    end: datetime

    @property
    def start_unix(self) -> int:
        return int(self.start.timestamp())

    @property
    def end_unix(self) -> int:
        return int(self.end.timestamp())


@dataclass(frozen=True)
class CostLine:
    provider_project_id: str | None
    line_item: str | None
    amount: Decimal
    currency: str
    bucket_start: datetime
    bucket_end: datetime


@dataclass(frozen=True)
class UsageLine:
    provider_project_id: str | None
    model: str | None
    counts: TokenCounts
    bucket_start: datetime
    bucket_end: datetime


@dataclass
class FetchResult(Generic[BucketT]):
    items: list[BucketT] = field(default_factory=list)
    pages: int = 0
    truncated: bool = False
    stopped_early: bool = False


class Page(Protocol[BucketT]):
    @property
    def buckets(self) -> Sequence[BucketT]: ...

    @property
    def next_cursor(self) -> str | None: ...


# Called between pages; returning False stops pagination but keeps what was fetched.
ContinueCheck = Callable[[], bool]


class ProviderAdapter:
    """Abstract cost/usage adapter for one provider."""

    provider_id: str
    cost_api_version: str
    usage_api_version: str

    def __init__(self, settings: CollectionSettings, retry_policy: RetryPolicy) -> None:
        self._settings = settings
        self._retry = retry_policy.with_timeout(settings.request_timeout_seconds)
        self._base_url = settings.base_url.rstrip("/")

    async def fetch_costs(
        self,
        api_key: str,
        window: CollectionWindow,
        provider_project_ids: Sequence[str],
        should_continue: ContinueCheck | None = None,
    ) -> FetchResult[CostLine]:
        raise NotImplementedError

    async def fetch_usage(
        self,
        api_key: str,
        window: CollectionWindow,
        provider_project_ids: Sequence[str],
        should_continue: ContinueCheck | None = None,
    ) -> FetchResult[UsageLine]:
        raise NotImplementedError

    async def validate_api_key(self, api_key: str) -> None:
        raise NotImplementedError

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._settings.request_timeout_seconds)

    async def _paginate(
        self,
        fetch_page: Callable[[str | None], Awaitable[Page[BucketT]]],
        *,
        label: str,
        should_continue: ContinueCheck | None,
    ) -> FetchResult[BucketT]:
        """Follow the cursor until exhausted, the ceiling is hit, or told to stop."""
        result: FetchResult[BucketT] = FetchResult()
        cursor: str | None = None
        max_pages = self._settings.max_pages

        while True:
            if result.pages and should_continue is not None and not should_continue():
                result.stopped_early = True
                logger.warning(
                    "Stopped paging %s early",
                    label,
                    extra={"event": "pagination_stopped", "provider": self.provider_id, "pages": result.pages},
                )
                break

            current_cursor = cursor
            page = await retry_async(
                lambda: fetch_page(current_cursor),
                policy=self._retry,
                context=f"{self.provider_id} {label} page fetch",
            )
            result.pages += 1
            result.items.extend(page.buckets)

            logger.info(
                "Fetched %s page",
                label,
                extra={
                    "event": "provider_page_fetched",
                    "provider": self.provider_id,
                    "page": result.pages,
                    "buckets_in_page": len(page.buckets),
                    "total_buckets": len(result.items),
                    "has_more": page.next_cursor is not None,
                },
            )

            cursor = page.next_cursor
            if cursor is None:
                break
            if result.pages >= max_pages:
                result.truncated = True
                logger.warning(
                    "Hit page ceiling for %s",
                    label,
                    extra={
                        "event": "pagination_truncated",
                        "provider": self.provider_id,
                        "pages": result.pages,
                        "total_buckets": len(result.items),
                    },
                )
                break

        return result
