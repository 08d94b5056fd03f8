"""Publishes per-queue quota objects carrying the deserved share as hard limits."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from arbitrator.domain.constraints import ArbitrationConfig, build_arbitration_config
from arbitrator.domain.models import ResourceVector
from arbitrator.domain.queue_info import QueueInfo
from arbitrator.repository.control_plane import (
    ControlPlane,
    ControlPlaneError,
    NotFoundError,
    QuotaRecord,
    build_quota_hard,
    quota_hard_vectors,
)
from arbitrator.utils.config import Settings, get_settings
from arbitrator.utils.logger import get_logger


logger = get_logger(__name__)


class QuotaOutcome(str, Enum):
    UNCHANGED = "unchanged"
    PUBLISHED = "published"
    FAILED = "failed"


class QuotaService:
    """Single writer of quota objects; only the controller loop calls it."""

    def __init__(
        self,
        control_plane: ControlPlane,
        settings: Optional[Settings] = None,
        config: Optional[ArbitrationConfig] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._config = config or build_arbitration_config(self._settings)
        self._control_plane = control_plane

    def list_published(self) -> dict[tuple[str, str], QuotaRecord]:
        return self._control_plane.list_quotas()

    def target_record(
        self,
        queue_info: QueueInfo,
        records: dict[tuple[str, str], QuotaRecord],
    ) -> Optional[QuotaRecord]:
        """The quota that enforces ``queue_info``'s share in its namespace.

        A managed quota wins, preferring the one named after the queue. Failing
        that, a pre-existing quota in the namespace is adopted, again preferring
        the queue's name. None means a quota named after the queue must be
        created.
        """
        in_namespace = sorted(
            (record for record in records.values() if record.namespace == queue_info.namespace),
            key=lambda record: record.name,
        )
        managed = [record for record in in_namespace if record.managed]
        for candidates in (managed, in_namespace):
            for record in candidates:
                if record.name == queue_info.name:
                    return record
            if candidates:
                return candidates[0]
        return None

    def published_limit(self, record: Optional[QuotaRecord]) -> Optional[ResourceVector]:
        """Hard limit currently enforced by ``record`` (first configured prefix)."""
        if record is None:
            return None
        prefix = self._config.quota_hard_prefixes[0]
        return quota_hard_vectors(record.hard, self._config.quota_hard_prefixes)[prefix]

    def is_current(self, record: Optional[QuotaRecord], deserved: ResourceVector) -> bool:
        if record is None or not record.managed:
            return False
        vectors = quota_hard_vectors(record.hard, self._config.quota_hard_prefixes)
        return all(
            f"{prefix}.{dimension}" in record.hard and vector == deserved
            for prefix, vector in vectors.items()
            for dimension in ("cpu", "memory")
        )

    def publish(
        self,
        queue_info: QueueInfo,
        deserved: ResourceVector,
        record: Optional[QuotaRecord],
    ) -> QuotaOutcome:
        if self.is_current(record, deserved):
            return QuotaOutcome.UNCHANGED

        name = record.name if record is not None else queue_info.name
        adopt = record is not None and not record.managed
        hard = build_quota_hard(deserved, self._config.quota_hard_prefixes)
        try:
            self._control_plane.upsert_quota(queue_info.namespace, name, hard, adopt=adopt)
        except ControlPlaneError as exc:
            logger.warning(
                "Quota publish failed | queue=%s | namespace=%s | quota=%s | error=%s",
                queue_info.name,
                queue_info.namespace,
                name,
                exc,
            )
            return QuotaOutcome.FAILED

        if adopt:
            logger.info("Quota adopted | queue=%s | namespace=%s | quota=%s", queue_info.name, queue_info.namespace, name)
        logger.info(
            "Quota published | queue=%s | namespace=%s | quota=%s | cpu_m=%s | memory=%s",
            queue_info.name,
            queue_info.namespace,
            name,
            deserved.cpu,
            deserved.memory,
        )
        return QuotaOutcome.PUBLISHED

    def teardown_orphans(
        self,
        records: dict[tuple[str, str], QuotaRecord],
        in_use: Iterable[tuple[str, str]],
    ) -> list[tuple[str, str]]:
        """Delete managed quotas that no live queue publishes to.

        Adopted quotas belonged to someone else first; they keep their last
        limits instead of being deleted.
        """
        live = set(in_use)
        removed: list[tuple[str, str]] = []
        for key in sorted(records):
            record = records[key]
            if not record.managed or key in live:
                continue
            namespace, name = key
            if record.adopted:
                logger.debug("Adopted quota left in place | namespace=%s | name=%s", namespace, name)
                continue
            try:
                self._control_plane.delete_quota(namespace, name)
            except NotFoundError:
                pass
            except ControlPlaneError as exc:
                logger.warning("Quota teardown failed | namespace=%s | name=%s | error=%s", namespace, name, exc)
                continue
            logger.info("Quota torn down | namespace=%s | name=%s", namespace, name)
            removed.append(key)
        return removed
