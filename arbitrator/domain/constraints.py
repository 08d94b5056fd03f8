"""Domain-level validation rules for the arbitration loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from arbitrator.utils.config import Settings


QUOTA_HARD_PREFIXES = frozenset({"limits", "requests"})


@dataclass(frozen=True)
class ArbitrationConfig:
    resync_period_seconds: float
    watch_timeout_seconds: int
    watch_retry_backoff_seconds: float
    cache_poll_seconds: float
    request_timeout_seconds: float
    eviction_grace_period_seconds: Optional[int]
    quota_hard_prefixes: tuple[str, ...]


def build_arbitration_config(settings: Settings) -> ArbitrationConfig:
    return ArbitrationConfig(
        resync_period_seconds=settings.resync_period_seconds,
        watch_timeout_seconds=settings.watch_timeout_seconds,
        watch_retry_backoff_seconds=settings.watch_retry_backoff_seconds,
        cache_poll_seconds=settings.cache_poll_seconds,
        request_timeout_seconds=settings.request_timeout_seconds,
        eviction_grace_period_seconds=settings.eviction_grace_period_seconds,
        quota_hard_prefixes=settings.quota_hard_prefixes,
    )


def validate_arbitration_config(config: ArbitrationConfig) -> None:
    if config.resync_period_seconds <= 0:
        raise ValueError("resync_period_seconds must be > 0")
    if config.watch_timeout_seconds <= 0:
        raise ValueError("watch_timeout_seconds must be > 0")
    if config.watch_retry_backoff_seconds < 0:
        raise ValueError("watch_retry_backoff_seconds must be >= 0")
    if config.cache_poll_seconds <= 0:
        raise ValueError("cache_poll_seconds must be > 0")
    if config.request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be > 0")
    if config.eviction_grace_period_seconds is not None and config.eviction_grace_period_seconds < 0:
        raise ValueError("eviction_grace_period_seconds must be >= 0")
    if not config.quota_hard_prefixes:
        raise ValueError("quota_hard_prefixes must not be empty")
    unknown = set(config.quota_hard_prefixes) - QUOTA_HARD_PREFIXES
    if unknown:
        raise ValueError(f"quota_hard_prefixes has unsupported entries: {sorted(unknown)}")
