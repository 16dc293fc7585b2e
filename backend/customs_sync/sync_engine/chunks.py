"""Splitting a date span into API-sized chunks."""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from customs_sync.config import Settings

# Hard ceiling of the customs list request
MAX_CHUNK_DAYS = 45


@dataclass(frozen=True)
class Chunk:
    index: int
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


def split_period(start: date, end: date, chunk_days: int) -> list[Chunk]:
    """Contiguous, non-overlapping chunks of at most ``chunk_days`` covering [start, end]."""
    if end < start:
        raise ValueError(f"Period end {end} is before start {start}")
    if chunk_days < 1:
        raise ValueError(f"chunk_days must be positive, got {chunk_days}")

    chunks = []
    current = start
    while current <= end:
        chunk_end = min(current + timedelta(days=chunk_days - 1), end)
        chunks.append(Chunk(index=len(chunks), start=current, end=chunk_end))
        current = chunk_end + timedelta(days=1)
    return chunks


def clamp_chunk_days(value: Any, default: int, upper: int = MAX_CHUNK_DAYS) -> int:
    try:
        days = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(1, min(upper, MAX_CHUNK_DAYS, days))


def resolve_chunk_days(settings: Settings, company_settings: dict | None) -> int:
    """Company override, else the profile default, always within [1, max_chunk_days]."""
    upper = settings.max_chunk_days
    if settings.sync_profile == "production":
        default = settings.production_chunk_days
    else:
        default = settings.default_chunk_days
    default = clamp_chunk_days(default, 7, upper)
    raw = (company_settings or {}).get("chunk_days")
    if raw is None:
        return default
    return clamp_chunk_days(raw, default, upper)


def resolve_detail_pacing_seconds(settings: Settings, company_settings: dict | None) -> float:
    """Per-item detail pacing; companies may slow it down to at most 10s, never below 1s."""
    default = settings.detail_pacing_ms / 1000
    raw = (company_settings or {}).get("request_delay_seconds")
    if raw is None:
        return default
    try:
        seconds = int(float(raw))
    except (TypeError, ValueError):
        return default
    return float(max(1, min(10, seconds)))
