"""Runtime settings loaded from ARBITRATOR_* environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


ENV_PREFIX = "ARBITRATOR_"


def _env(name: str, default: str) -> str:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _env_optional(name: str) -> Optional[str]:
    value = os.environ.get(f"{ENV_PREFIX}{name}", "").strip()
    return value or None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_tuple(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str = "Queue Arbitrator"
    app_version: str = "0.3.0"
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    kubeconfig_path: Optional[str] = None
    queue_crd_group: str = "arbitrator.incubator.k8s.io"
    queue_crd_version: str = "v1"
    queue_crd_plural: str = "queues"
    queue_crd_kind: str = "Queue"
    register_queue_crd: bool = True

    allocation_policy: str = "proportion"
    resync_period_seconds: float = 5.0
    watch_timeout_seconds: int = 30
    watch_retry_backoff_seconds: float = 2.0
    cache_poll_seconds: float = 0.5
    request_timeout_seconds: float = 10.0
    eviction_grace_period_seconds: Optional[int] = None

    quota_hard_prefixes: tuple[str, ...] = ("limits", "requests")
    managed_by_label_key: str = "app.kubernetes.io/managed-by"
    managed_by_label_value: str = "queue-arbitrator"

    operator_token: Optional[str] = None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests call ``get_settings.cache_clear()``."""
    grace_period = _env_optional("EVICTION_GRACE_PERIOD_SECONDS")
    return Settings(
        log_level=_env("LOG_LEVEL", "INFO"),
        api_host=_env("API_HOST", "127.0.0.1"),
        api_port=int(_env("API_PORT", "8080")),
        kubeconfig_path=_env_optional("KUBECONFIG"),
        queue_crd_group=_env("QUEUE_CRD_GROUP", "arbitrator.incubator.k8s.io"),
        queue_crd_version=_env("QUEUE_CRD_VERSION", "v1"),
        queue_crd_plural=_env("QUEUE_CRD_PLURAL", "queues"),
        queue_crd_kind=_env("QUEUE_CRD_KIND", "Queue"),
        register_queue_crd=_env_bool("REGISTER_QUEUE_CRD", True),
        allocation_policy=_env("ALLOCATION_POLICY", "proportion"),
        resync_period_seconds=float(_env("RESYNC_PERIOD_SECONDS", "5")),
        watch_timeout_seconds=int(_env("WATCH_TIMEOUT_SECONDS", "30")),
        watch_retry_backoff_seconds=float(_env("WATCH_RETRY_BACKOFF_SECONDS", "2")),
        cache_poll_seconds=float(_env("CACHE_POLL_SECONDS", "0.5")),
        request_timeout_seconds=float(_env("REQUEST_TIMEOUT_SECONDS", "10")),
        eviction_grace_period_seconds=int(grace_period) if grace_period is not None else None,
        quota_hard_prefixes=_env_tuple("QUOTA_HARD_PREFIXES", ("limits", "requests")),
        operator_token=_env_optional("OPERATOR_TOKEN"),
    )
