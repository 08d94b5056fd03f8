"""Arbitration controller: the reconciliation loop tying cache, policy, quotas and preemption together."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from arbitrator.domain.constraints import ArbitrationConfig, build_arbitration_config
from arbitrator.domain.models import QueueStatus, ResourceVector
from arbitrator.domain.queue_info import QueueInfo
from arbitrator.repository.control_plane import ControlPlane, ControlPlaneError, QuotaRecord
from arbitrator.services.cache_service import ClusterStateCache
from arbitrator.services.policy_service import AllocationPolicy
from arbitrator.services.preemption_service import PreemptionResult, PreemptionService
from arbitrator.services.quota_service import QuotaOutcome, QuotaService
from arbitrator.utils.config import Settings, get_settings
from arbitrator.utils.logger import get_logger


logger = get_logger(__name__)

STOP_POLL_SECONDS = 0.5


@dataclass(frozen=True)
class QueueCycleState:
    name: str
    namespace: str
    weight: int
    deserved: ResourceVector
    allocated: ResourceVector
    used: ResourceVector
    quota_outcome: QuotaOutcome


@dataclass
class CycleReport:
    started_at: datetime
    generation: int
    capacity: ResourceVector
    queues: dict[str, QueueCycleState] = field(default_factory=dict)
    removed_quotas: list[tuple[str, str]] = field(default_factory=list)
    preemption: PreemptionResult = field(default_factory=PreemptionResult)
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


class ArbitrationController:
    """Snapshot -> compute shares -> publish quotas -> preempt -> idle.

    Every cycle is derived from a fresh snapshot, so a failed step only leaves
    the cluster where the previous cycle left it. Only ``run`` drives cycles;
    ``request_reconcile`` just shortens the idle wait.
    """

    def __init__(
        self,
        cache: ClusterStateCache,
        policy: AllocationPolicy,
        quota_service: QuotaService,
        preemption_service: PreemptionService,
        control_plane: ControlPlane,
        settings: Optional[Settings] = None,
        config: Optional[ArbitrationConfig] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._config = config or build_arbitration_config(self._settings)
        self._cache = cache
        self._policy = policy
        self._quota_service = quota_service
        self._preemption_service = preemption_service
        self._control_plane = control_plane
        self._wakeup = threading.Event()
        self._report_lock = threading.Lock()
        self._latest_report: Optional[CycleReport] = None
        self._running = False

    @property
    def latest_report(self) -> Optional[CycleReport]:
        with self._report_lock:
            return self._latest_report

    @property
    def running(self) -> bool:
        return self._running

    def request_reconcile(self) -> None:
        self._wakeup.set()

    def reconcile_once(self) -> CycleReport:
        started = time.monotonic()
        snapshot = self._cache.snapshot()
        report = CycleReport(
            started_at=datetime.now(timezone.utc),
            generation=snapshot.generation,
            capacity=snapshot.capacity,
        )

        weights = {name: queue_info.weight for name, queue_info in snapshot.queues.items()}
        shares = self._policy.compute(weights, snapshot.capacity)

        try:
            records = self._quota_service.list_published()
        except ControlPlaneError as exc:
            logger.warning("Listing published quotas failed | error=%s", exc)
            report.errors.append(f"list quotas: {exc}")
            records = None

        quotas_in_use: set[tuple[str, str]] = set()
        for name in sorted(snapshot.queues):
            queue_info = snapshot.queues[name]
            deserved = shares.get(name, ResourceVector())
            previous_status = QueueStatus(
                deserved=queue_info.deserved(),
                allocated=queue_info.allocated(),
                used=queue_info.queue.status.used,
            )
            queue_info.set_deserved(deserved)
            outcome = self._publish_quota(queue_info, deserved, records, quotas_in_use, report)
            self._publish_status(queue_info, previous_status, report)
            report.queues[name] = QueueCycleState(
                name=name,
                namespace=queue_info.namespace,
                weight=queue_info.weight,
                deserved=deserved,
                allocated=queue_info.allocated(),
                used=queue_info.used(),
                quota_outcome=outcome,
            )

        if records is not None:
            report.removed_quotas = self._quota_service.teardown_orphans(records, quotas_in_use)

        report.preemption = self._preemption_service.reconcile_preemption(snapshot)
        for failure in report.preemption.failed:
            report.errors.append(f"evict {failure.namespace}/{failure.name}: {failure.reason}")

        report.duration_seconds = time.monotonic() - started
        with self._report_lock:
            self._latest_report = report
        logger.info(
            (
                "Reconcile cycle completed | generation=%s | queues=%s | evicted=%s | "
                "eviction_failures=%s | errors=%s | duration_s=%.3f"
            ),
            report.generation,
            len(report.queues),
            len(report.preemption.evicted),
            len(report.preemption.failed),
            len(report.errors),
            report.duration_seconds,
        )
        return report

    def _publish_quota(
        self,
        queue_info: QueueInfo,
        deserved: ResourceVector,
        records: Optional[dict[tuple[str, str], QuotaRecord]],
        quotas_in_use: set[tuple[str, str]],
        report: CycleReport,
    ) -> QuotaOutcome:
        if records is None:
            return QuotaOutcome.FAILED
        record = self._quota_service.target_record(queue_info, records)
        quotas_in_use.add((queue_info.namespace, record.name if record is not None else queue_info.name))
        outcome = self._quota_service.publish(queue_info, deserved, record)
        if outcome is QuotaOutcome.FAILED:
            report.errors.append(f"publish quota {queue_info.namespace}/{queue_info.name}")
            published = self._quota_service.published_limit(record)
            if published is not None:
                queue_info.set_allocated(published)
        else:
            queue_info.set_allocated(deserved)
        return outcome

    def _publish_status(self, queue_info: QueueInfo, previous: QueueStatus, report: CycleReport) -> None:
        status = QueueStatus(
            deserved=queue_info.deserved(),
            allocated=queue_info.allocated(),
            used=queue_info.used(),
        )
        if status == previous:
            return
        try:
            self._control_plane.update_queue_status(queue_info.queue, status)
        except ControlPlaneError as exc:
            logger.warning("Queue status update failed | queue=%s | error=%s", queue_info.name, exc)
            report.errors.append(f"queue status {queue_info.name}: {exc}")

    def run(self, stop_event: threading.Event) -> None:
        self._running = True
        logger.info(
            "Arbitration controller started | policy=%s | resync_period_s=%s",
            self._policy.name,
            self._config.resync_period_seconds,
        )
        try:
            while not stop_event.is_set():
                try:
                    report = self.reconcile_once()
                    generation = report.generation
                except Exception:  # pragma: no cover - a bad cycle must not end the loop
                    logger.exception("Unexpected reconcile failure")
                    generation = self._cache.generation
                self._idle(stop_event, generation)
        finally:
            self._running = False
            logger.info("Arbitration controller stopped")

    def _idle(self, stop_event: threading.Event, generation: int) -> None:
        deadline = time.monotonic() + self._config.resync_period_seconds
        while not stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            if self._wakeup.is_set():
                self._wakeup.clear()
                return
            if self._cache.wait_for_change(generation, timeout=min(remaining, STOP_POLL_SECONDS)):
                return
