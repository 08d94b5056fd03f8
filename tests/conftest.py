from __future__ import annotations

import queue
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Iterator, Mapping, Optional

import pytest

from arbitrator.domain.models import (
    EventType,
    NodeInfo,
    Queue,
    QueueStatus,
    ResourceKind,
    ResourceVector,
    WatchEvent,
    WorkloadInfo,
)
from arbitrator.repository.control_plane import (
    ListResult,
    NotFoundError,
    QuotaRecord,
    TransientControlPlaneError,
    WatchExpiredError,
)
from arbitrator.utils.config import get_settings


BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
GI = 1024**3


def make_node(name: str, cpu: str = "15", memory: str = "15Gi", ready: bool = True, unschedulable: bool = False):
    return NodeInfo(
        name=name,
        allocatable=ResourceVector.from_quantities({"cpu": cpu, "memory": memory}),
        ready=ready,
        unschedulable=unschedulable,
    )


def make_workload(
    name: str,
    namespace: str,
    cpu: Optional[str] = "1",
    memory: Optional[str] = "1Gi",
    created_offset: int = 0,
    priority: int = 0,
    phase: str = "Running",
    terminating: bool = False,
) -> WorkloadInfo:
    return WorkloadInfo(
        name=name,
        namespace=namespace,
        request=ResourceVector.from_quantities({"cpu": cpu, "memory": memory}),
        phase=phase,
        created_at=BASE_TIME + timedelta(seconds=created_offset),
        priority=priority,
        terminating=terminating,
    )


def make_queue(name: str, namespace: str, weight: int = 1) -> Queue:
    return Queue(name=name, namespace=namespace, weight=weight)


class FakeControlPlane:
    """In-memory control plane that records writes and replays them as watch events."""

    def __init__(self) -> None:
        self.nodes: dict[str, NodeInfo] = {}
        self.queues: dict[tuple[str, str], Queue] = {}
        self.workloads: dict[tuple[str, str], WorkloadInfo] = {}
        self.quotas: dict[tuple[str, str], QuotaRecord] = {}
        self.quota_writes: list[tuple[str, str]] = []
        self.deleted_workloads: list[tuple[str, str]] = []
        self.status_updates: list[tuple[str, QueueStatus]] = []
        self.failing_workloads: set[tuple[str, str]] = set()
        self.fail_quota_writes = False
        self.fail_list_quotas = False
        self.fail_list_kinds: set[ResourceKind] = set()
        self.expire_next_watch: set[ResourceKind] = set()
        self.crd_registrations = 0
        self._version = 0
        self._events: dict[ResourceKind, queue.Queue] = {kind: queue.Queue() for kind in ResourceKind}

    # --- test-side mutations, each emitting a watch event ---

    def _emit(self, event_type: EventType, kind: ResourceKind, obj) -> None:
        self._version += 1
        self._events[kind].put(
            WatchEvent(type=event_type, kind=kind, obj=obj, resource_version=str(self._version))
        )

    def put_node(self, node: NodeInfo) -> None:
        event_type = EventType.MODIFIED if node.name in self.nodes else EventType.ADDED
        self.nodes[node.name] = node
        self._emit(event_type, ResourceKind.NODE, node)

    def put_queue(self, queue_obj: Queue) -> None:
        key = (queue_obj.namespace, queue_obj.name)
        event_type = EventType.MODIFIED if key in self.queues else EventType.ADDED
        self.queues[key] = queue_obj
        self._emit(event_type, ResourceKind.QUEUE, queue_obj)

    def remove_queue(self, namespace: str, name: str) -> None:
        queue_obj = self.queues.pop((namespace, name))
        self._emit(EventType.DELETED, ResourceKind.QUEUE, queue_obj)

    def put_workload(self, workload: WorkloadInfo) -> None:
        event_type = EventType.MODIFIED if workload.key in self.workloads else EventType.ADDED
        self.workloads[workload.key] = workload
        self._emit(event_type, ResourceKind.WORKLOAD, workload)

    def drain_events(self) -> list[WatchEvent]:
        drained: list[WatchEvent] = []
        for kind in ResourceKind:
            while True:
                try:
                    drained.append(self._events[kind].get_nowait())
                except queue.Empty:
                    break
        return drained

    def running_in(self, namespace: str) -> list[str]:
        return sorted(name for (ns, name) in self.workloads if ns == namespace)

    # --- ControlPlane protocol ---

    def list_objects(self, kind: ResourceKind) -> ListResult:
        if kind in self.fail_list_kinds:
            raise TransientControlPlaneError(f"list {kind.value} unavailable")
        if kind is ResourceKind.NODE:
            objects = list(self.nodes.values())
        elif kind is ResourceKind.QUEUE:
            objects = list(self.queues.values())
        else:
            objects = list(self.workloads.values())
        return ListResult(objects=objects, resource_version=str(self._version))

    def watch_objects(self, kind: ResourceKind, resource_version, timeout_seconds: int) -> Iterator[WatchEvent]:
        if kind in self.expire_next_watch:
            self.expire_next_watch.discard(kind)
            raise WatchExpiredError(f"watch {kind.value} expired")
        try:
            event = self._events[kind].get(timeout=0.02)
        except queue.Empty:
            return
        yield event

    def list_quotas(self) -> dict[tuple[str, str], QuotaRecord]:
        if self.fail_list_quotas:
            raise TransientControlPlaneError("quota list unavailable")
        return dict(self.quotas)

    def upsert_quota(self, namespace: str, name: str, hard: Mapping[str, str], adopt: bool = False) -> None:
        if self.fail_quota_writes:
            raise TransientControlPlaneError("quota write timed out")
        existing = self.quotas.get((namespace, name))
        if adopt and existing is None:
            raise NotFoundError(f"quota {namespace}/{name} not found")
        adopted = adopt or (existing is not None and existing.adopted)
        self.quotas[(namespace, name)] = QuotaRecord(
            namespace=namespace, name=name, hard=dict(hard), managed=True, adopted=adopted
        )
        self.quota_writes.append((namespace, name))

    def delete_quota(self, namespace: str, name: str) -> None:
        if self.quotas.pop((namespace, name), None) is None:
            raise NotFoundError(f"quota {namespace}/{name} not found")

    def delete_workload(self, namespace: str, name: str) -> None:
        key = (namespace, name)
        if key in self.failing_workloads:
            raise TransientControlPlaneError(f"delete {namespace}/{name} timed out")
        workload = self.workloads.pop(key, None)
        if workload is None:
            raise NotFoundError(f"pod {namespace}/{name} not found")
        self.deleted_workloads.append(key)
        self._emit(EventType.DELETED, ResourceKind.WORKLOAD, workload)

    def update_queue_status(self, queue_obj: Queue, status: QueueStatus) -> None:
        self.status_updates.append((queue_obj.name, status))
        stored = self.queues.get((queue_obj.namespace, queue_obj.name))
        if stored is not None:
            updated = Queue(name=stored.name, namespace=stored.namespace, weight=stored.weight, status=status)
            self.queues[(stored.namespace, stored.name)] = updated
            self._emit(EventType.MODIFIED, ResourceKind.QUEUE, updated)

    def ensure_queue_crd(self) -> None:
        self.crd_registrations += 1


@pytest.fixture
def fake_control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def test_settings():
    get_settings.cache_clear()
    return replace(
        get_settings(),
        resync_period_seconds=0.05,
        watch_timeout_seconds=1,
        watch_retry_backoff_seconds=0.01,
        cache_poll_seconds=0.01,
        register_queue_crd=False,
        operator_token=None,
    )
