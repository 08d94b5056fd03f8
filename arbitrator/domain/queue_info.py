"""Queue accounting entity shared by the cache, the controller and preemption."""

from __future__ import annotations

import copy
from typing import Iterable, Optional

from arbitrator.domain.models import Queue, ResourceVector, WorkloadInfo


class QueueInfo:
    """A tenant queue plus the table of workloads charged against it.

    ``used`` is never stored: it is summed from the active members of the
    membership table every time it is read.
    """

    def __init__(self, queue: Queue, workloads: Optional[Iterable[WorkloadInfo]] = None) -> None:
        self._queue = queue
        self.workloads: dict[str, WorkloadInfo] = {}
        for workload in workloads or ():
            self.workloads[workload.name] = workload

    @property
    def name(self) -> str:
        return self._queue.name

    @property
    def namespace(self) -> str:
        return self._queue.namespace

    @property
    def weight(self) -> int:
        return self._queue.weight

    @property
    def queue(self) -> Queue:
        return self._queue

    def deserved(self) -> ResourceVector:
        return self._queue.status.deserved

    def allocated(self) -> ResourceVector:
        return self._queue.status.allocated

    def used(self) -> ResourceVector:
        total = ResourceVector()
        for workload in self.workloads.values():
            if workload.active:
                total = total + workload.request
        return total

    def used_under_allocated(self) -> bool:
        return self.used().is_under(self.allocated())

    def used_under_deserved(self) -> bool:
        return self.used().is_under(self.deserved())

    def set_deserved(self, deserved: ResourceVector) -> None:
        self._queue.status.deserved = deserved

    def set_allocated(self, allocated: ResourceVector) -> None:
        self._queue.status.allocated = allocated

    def replace_queue(self, queue: Queue) -> None:
        """Swap in updated CR state while keeping the membership table."""
        self._queue = queue

    def add_workload(self, workload: WorkloadInfo) -> None:
        self.workloads[workload.name] = workload

    def remove_workload(self, name: str) -> Optional[WorkloadInfo]:
        return self.workloads.pop(name, None)

    def active_workloads(self) -> list[WorkloadInfo]:
        return [workload for workload in self.workloads.values() if workload.active]

    def clone(self) -> "QueueInfo":
        # WorkloadInfo is frozen, so copying the table is enough to detach it.
        return QueueInfo(copy.deepcopy(self._queue), self.workloads.values())

    def __repr__(self) -> str:
        return (
            f"QueueInfo(name={self.name!r}, namespace={self.namespace!r}, weight={self.weight}, "
            f"workloads={len(self.workloads)})"
        )
