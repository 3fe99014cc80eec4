"""Normalized, provider-neutral records emitted by the collector."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

UNKNOWN_LINE_ITEM = "unknown"


@dataclass(frozen=True)
class CollectedCost:
    project_id: int
    provider: str
    line_item: str
    amount: Decimal
    currency: str
    bucket_start: datetime
    bucket_end: datetime
    api_version: str
    # Provenance only; not part of the stored row.
    organization_id: str
    provider_project_id: str

    @property
    def dedup_key(self) -> tuple:
        return (self.project_id, self.bucket_start, self.bucket_end, self.line_item, self.api_version)

    def to_row(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "provider": self.provider,
            "line_item": self.line_item,
            "amount": self.amount,
            "currency": self.currency,
            "bucket_start": self.bucket_start,
            "bucket_end": self.bucket_end,
            "api_version": self.api_version,
        }


@dataclass(frozen=True)
class TokenCounts:
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


@dataclass(frozen=True)
class CollectedTokenUsage:
    project_id: int
    provider: str
    model: str
    counts: TokenCounts
    bucket_start: datetime
    bucket_end: datetime
    api_version: str
    organization_id: str
    provider_project_id: str

    @property
    def dedup_key(self) -> tuple:
        return (self.project_id, self.bucket_start, self.bucket_end, self.model, self.api_version)

    def to_row(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "provider": self.provider,
            "model": self.model,
            "bucket_start": self.bucket_start,
            "bucket_end": self.bucket_end,
            "api_version": self.api_version,
            **asdict(self.counts),
        }
