"""Preemption engine: evicts workloads from queues using more than they deserve."""

from __future__ import annotations

from dataclasses import dataclass, field

from arbitrator.domain.models import TRACKED_RESOURCES, ResourceVector, WorkloadInfo
from arbitrator.domain.queue_info import QueueInfo
from arbitrator.repository.control_plane import ControlPlane, ControlPlaneError, NotFoundError
from arbitrator.services.cache_service import ClusterSnapshot
from arbitrator.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class EvictionFailure:
    namespace: str
    name: str
    reason: str


@dataclass
class PreemptionResult:
    evicted: list[WorkloadInfo] = field(default_factory=list)
    failed: list[EvictionFailure] = field(default_factory=list)
    unresolved_queues: list[str] = field(default_factory=list)

    def evicted_in(self, namespace: str) -> list[WorkloadInfo]:
        return [workload for workload in self.evicted if workload.namespace == namespace]


def victim_order_key(workload: WorkloadInfo) -> tuple:
    """Lowest priority first, then most recently created, then name."""
    return (workload.priority, -workload.created_at.timestamp(), workload.name)


def _frees_excess(workload: WorkloadInfo, remaining: ResourceVector) -> bool:
    return any(
        remaining.get(dimension) > 0 and workload.request.get(dimension) > 0
        for dimension in TRACKED_RESOURCES
    )


def select_victims(queue_info: QueueInfo) -> tuple[list[WorkloadInfo], ResourceVector]:
    """Greedy victim plan for one queue.

    Returns the victims and the excess left once candidates ran out (zero when
    the plan clears it). Candidates that free nothing on a dimension still in
    excess are skipped; picking stops the moment every dimension is cleared,
    so overshoot is bounded by the last victim's footprint.
    """
    remaining = (queue_info.used() - queue_info.deserved()).positive_part()
    victims: list[WorkloadInfo] = []
    for candidate in sorted(queue_info.active_workloads(), key=victim_order_key):
        if remaining.is_zero():
            break
        if not _frees_excess(candidate, remaining):
            continue
        victims.append(candidate)
        remaining = (remaining - candidate.request).positive_part()
    return victims, remaining


class PreemptionService:
    """Brings every queue's usage back under its deserved share."""

    def __init__(self, control_plane: ControlPlane) -> None:
        self._control_plane = control_plane

    def reconcile_preemption(self, snapshot: ClusterSnapshot) -> PreemptionResult:
        result = PreemptionResult()
        for name in sorted(snapshot.queues):
            queue_info = snapshot.queues[name]
            if queue_info.used_under_deserved():
                continue

            victims, leftover = select_victims(queue_info)
            used = queue_info.used()
            deserved = queue_info.deserved()
            logger.info(
                (
                    "Queue over deserved | queue=%s | used_cpu_m=%s | deserved_cpu_m=%s | "
                    "used_memory=%s | deserved_memory=%s | victims=%s"
                ),
                name,
                used.cpu,
                deserved.cpu,
                used.memory,
                deserved.memory,
                len(victims),
            )
            if not leftover.is_zero():
                logger.warning(
                    "No further eviction candidates | queue=%s | remaining_cpu_m=%s | remaining_memory=%s",
                    name,
                    leftover.cpu,
                    leftover.memory,
                )
                result.unresolved_queues.append(name)

            for victim in victims:
                self._evict(victim, result)
        return result

    def _evict(self, victim: WorkloadInfo, result: PreemptionResult) -> None:
        try:
            self._control_plane.delete_workload(victim.namespace, victim.name)
        except NotFoundError:
            # Already gone; its resources are freed either way.
            result.evicted.append(victim)
            return
        except ControlPlaneError as exc:
            logger.warning(
                "Eviction failed | namespace=%s | workload=%s | error=%s",
                victim.namespace,
                victim.name,
                exc,
            )
            result.failed.append(EvictionFailure(namespace=victim.namespace, name=victim.name, reason=str(exc)))
            return
        logger.info("Workload evicted | namespace=%s | workload=%s", victim.namespace, victim.name)
        result.evicted.append(victim)
