"""Thread-safe in-process mirror of nodes, queues and workloads."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from arbitrator.domain.constraints import ArbitrationConfig, build_arbitration_config
from arbitrator.domain.models import (
    EventType,
    NodeInfo,
    Queue,
    ResourceKind,
    ResourceVector,
    WatchEvent,
    WorkloadInfo,
)
from arbitrator.domain.queue_info import QueueInfo
from arbitrator.repository.control_plane import (
    ControlPlane,
    ControlPlaneError,
    WatchExpiredError,
)
from arbitrator.utils.config import Settings, get_settings
from arbitrator.utils.logger import get_logger


logger = get_logger(__name__)


class CacheSyncError(Exception):
    """Raised when the initial list from the control plane cannot be completed."""


@dataclass
class ClusterSnapshot:
    capacity: ResourceVector
    queues: dict[str, QueueInfo]
    generation: int = 0
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ClusterStateCache:
    """Owns the node, queue and workload tables.

    All writes go through ``apply_event`` on the ingestion thread; readers get
    a cloned ``ClusterSnapshot``. One ``RLock`` guards every table.

    The arbitration generation moves when capacity, the queue set or a queue
    weight changes. Workload churn and status-only queue updates do not move
    it, so the controller's own status writes never wake it up.

    Queues are namespaced, so they are tracked by ``(namespace, name)``. Each
    namespace has at most one owning queue, which is charged for every
    workload in it, and snapshots are keyed by queue name, so a name is
    arbitrated at most once. See ``_resolve_owners``.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        settings: Optional[Settings] = None,
        config: Optional[ArbitrationConfig] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._config = config or build_arbitration_config(self._settings)
        self._control_plane = control_plane
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)

        self._nodes: dict[str, NodeInfo] = {}
        # Every known queue, by (namespace, name); only owners take part in arbitration.
        self._queues: dict[tuple[str, str], QueueInfo] = {}
        self._owners: dict[str, tuple[str, str]] = {}
        self._by_name: dict[str, tuple[str, str]] = {}
        self._ignored: dict[tuple[str, str], str] = {}
        self._workloads: dict[str, dict[str, WorkloadInfo]] = {}
        self._capacity = ResourceVector()
        self._generation = 0
        self._resource_versions: dict[ResourceKind, Optional[str]] = {}
        self._synced = False

    @property
    def has_synced(self) -> bool:
        with self._lock:
            return self._synced

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def sync(self) -> None:
        """List every kind and rebuild the tables. Failure here is fatal to startup."""
        listings = {}
        for kind in (ResourceKind.NODE, ResourceKind.QUEUE, ResourceKind.WORKLOAD):
            try:
                listings[kind] = self._control_plane.list_objects(kind)
            except ControlPlaneError as exc:
                raise CacheSyncError(f"Initial list of {kind.value} failed: {exc}") from exc

        with self._lock:
            for kind, listing in listings.items():
                self._replace_kind(kind, listing.objects)
                self._resource_versions[kind] = listing.resource_version
            self._synced = True
            self._bump_generation()
            logger.info(
                "Cache synced | nodes=%s | queues=%s | workloads=%s | capacity_cpu_m=%s | capacity_memory=%s",
                len(self._nodes),
                len(self._queues),
                sum(len(members) for members in self._workloads.values()),
                self._capacity.cpu,
                self._capacity.memory,
            )

    def run(self, stop_event: threading.Event) -> None:
        """Ingest watch events until ``stop_event`` is set.

        One watcher thread per kind only enqueues; this thread is the single
        writer. A queue.Queue keeps each kind's events in delivery order.
        """
        if not self.has_synced:
            self.sync()

        events: queue.Queue[WatchEvent] = queue.Queue()
        watchers = [
            threading.Thread(
                target=self._watch_kind,
                args=(kind, stop_event, events),
                name=f"watch-{kind.value}",
                daemon=True,
            )
            for kind in (ResourceKind.NODE, ResourceKind.QUEUE, ResourceKind.WORKLOAD)
        ]
        for watcher in watchers:
            watcher.start()
        logger.info("Cache ingestion started")

        while not stop_event.is_set():
            try:
                event = events.get(timeout=self._config.cache_poll_seconds)
            except queue.Empty:
                continue
            self.apply_event(event)

        for watcher in watchers:
            watcher.join(timeout=self._config.cache_poll_seconds)
        logger.info("Cache ingestion stopped")

    def _watch_kind(
        self,
        kind: ResourceKind,
        stop_event: threading.Event,
        events: "queue.Queue[WatchEvent]",
    ) -> None:
        with self._lock:
            resource_version = self._resource_versions.get(kind)

        while not stop_event.is_set():
            try:
                for event in self._control_plane.watch_objects(
                    kind,
                    resource_version,
                    self._config.watch_timeout_seconds,
                ):
                    if event.resource_version:
                        resource_version = event.resource_version
                    events.put(event)
                    if stop_event.is_set():
                        return
            except WatchExpiredError:
                logger.info("Watch expired, re-listing | kind=%s", kind.value)
                try:
                    listing = self._control_plane.list_objects(kind)
                except ControlPlaneError as exc:
                    logger.warning("Re-list failed | kind=%s | error=%s", kind.value, exc)
                    stop_event.wait(self._config.watch_retry_backoff_seconds)
                    continue
                resource_version = listing.resource_version
                events.put(
                    WatchEvent(
                        type=EventType.SYNC,
                        kind=kind,
                        objects=tuple(listing.objects),
                        resource_version=listing.resource_version,
                    )
                )
            except ControlPlaneError as exc:
                logger.warning("Watch interrupted | kind=%s | error=%s", kind.value, exc)
                stop_event.wait(self._config.watch_retry_backoff_seconds)
            except Exception:  # pragma: no cover - keeps the watcher thread alive
                logger.exception("Unexpected watch failure | kind=%s", kind.value)
                stop_event.wait(self._config.watch_retry_backoff_seconds)

    def apply_event(self, event: WatchEvent) -> None:
        with self._lock:
            if event.type is EventType.SYNC:
                self._replace_kind(event.kind, list(event.objects))
                self._bump_generation()
            elif event.kind is ResourceKind.NODE:
                self._apply_node(event.type, event.obj)
            elif event.kind is ResourceKind.QUEUE:
                self._apply_queue(event.type, event.obj)
            else:
                self._apply_workload(event.type, event.obj)
            if event.resource_version:
                self._resource_versions[event.kind] = event.resource_version

    def _apply_node(self, event_type: EventType, node: NodeInfo) -> None:
        if event_type is EventType.DELETED:
            self._nodes.pop(node.name, None)
        else:
            self._nodes[node.name] = node
        self._recompute_capacity()

    def _apply_queue(self, event_type: EventType, queue_obj: Queue) -> None:
        before = self._arbitrated_signature()
        key = (queue_obj.namespace, queue_obj.name)
        existing = self._queues.get(key)
        if event_type is EventType.DELETED:
            if existing is None:
                return
            del self._queues[key]
            logger.info("Queue removed | queue=%s | namespace=%s", queue_obj.name, queue_obj.namespace)
        elif existing is None:
            self._queues[key] = QueueInfo(queue_obj)
            logger.info(
                "Queue added | queue=%s | namespace=%s | weight=%s",
                queue_obj.name,
                queue_obj.namespace,
                queue_obj.weight,
            )
        else:
            existing.replace_queue(queue_obj)
        self._resolve_owners(before)

    def _apply_workload(self, event_type: EventType, workload: WorkloadInfo) -> None:
        members = self._workloads.setdefault(workload.namespace, {})
        owner_key = self._owners.get(workload.namespace)
        owner = self._queues[owner_key] if owner_key is not None else None
        if event_type is EventType.DELETED:
            members.pop(workload.name, None)
            if not members:
                del self._workloads[workload.namespace]
            if owner is not None:
                owner.remove_workload(workload.name)
            return

        members[workload.name] = workload
        if owner is not None:
            owner.add_workload(workload)

    def _replace_kind(self, kind: ResourceKind, objects: list) -> None:
        if kind is ResourceKind.NODE:
            self._nodes = {node.name: node for node in objects}
            self._recompute_capacity()
        elif kind is ResourceKind.WORKLOAD:
            self._workloads = {}
            for workload in objects:
                self._workloads.setdefault(workload.namespace, {})[workload.name] = workload
            for namespace, key in self._owners.items():
                self._queues[key].workloads = dict(self._workloads.get(namespace, {}))
        else:
            before = self._arbitrated_signature()
            self._queues = {(queue_obj.namespace, queue_obj.name): QueueInfo(queue_obj) for queue_obj in objects}
            self._owners = {}
            self._resolve_owners(before)

    def _resolve_owners(self, before: tuple) -> None:
        """Pick the queues that take part in arbitration.

        Walking queues in ``(namespace, name)`` order, a queue is arbitrated
        when its namespace has no owner yet and no earlier queue holds its
        name. Only owners carry workloads; every other queue is ignored until
        the queue shadowing it goes away.
        """
        owners: dict[str, tuple[str, str]] = {}
        by_name: dict[str, tuple[str, str]] = {}
        for key in sorted(self._queues):
            namespace, name = key
            if namespace in owners:
                reason = f"namespace already owned by queue {owners[namespace][1]}"
            elif name in by_name:
                reason = f"name already used by queue in namespace {by_name[name][0]}"
            else:
                owners[namespace] = key
                by_name[name] = key
                continue
            if self._ignored.get(key) != reason:
                logger.warning("Queue ignored | queue=%s | namespace=%s | reason=%s", name, namespace, reason)
            self._ignored[key] = reason

        arbitrated = set(by_name.values())
        for key in list(self._ignored):
            if key not in self._queues or key in arbitrated:
                del self._ignored[key]

        previous_owners = set(self._owners.values())
        for key in previous_owners - arbitrated:
            if key in self._queues:
                self._queues[key].workloads = {}
        for namespace, key in owners.items():
            if key not in previous_owners:
                self._queues[key].workloads = dict(self._workloads.get(namespace, {}))

        self._owners = owners
        self._by_name = by_name
        if self._arbitrated_signature() != before:
            self._bump_generation()

    def _arbitrated_signature(self) -> tuple:
        return tuple(
            (name, key, self._queues[key].weight)
            for name, key in sorted(self._by_name.items())
            if key in self._queues
        )

    def _recompute_capacity(self) -> None:
        total = ResourceVector()
        for node in self._nodes.values():
            total = total + node.schedulable_capacity
        if total != self._capacity:
            logger.info(
                "Cluster capacity changed | cpu_m=%s | memory=%s | nodes=%s",
                total.cpu,
                total.memory,
                len(self._nodes),
            )
            self._capacity = total
            self._bump_generation()

    def _bump_generation(self) -> None:
        self._generation += 1
        self._changed.notify_all()

    def wait_for_change(self, generation: int, timeout: float) -> bool:
        """Block until the arbitration generation passes ``generation``; False on timeout."""
        with self._changed:
            return self._changed.wait_for(lambda: self._generation > generation, timeout=timeout)

    def ignored_queues(self) -> dict[tuple[str, str], str]:
        """Queues left out of arbitration, keyed by ``(namespace, name)``, with the reason."""
        with self._lock:
            return dict(self._ignored)

    def snapshot(self) -> ClusterSnapshot:
        with self._lock:
            return ClusterSnapshot(
                capacity=self._capacity,
                queues={name: self._queues[key].clone() for name, key in self._by_name.items()},
                generation=self._generation,
            )
