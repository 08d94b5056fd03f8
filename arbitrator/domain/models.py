"""Domain models for cluster capacity, tenant queues and running workloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_CEILING, Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from kubernetes.utils import parse_quantity

from arbitrator.utils.logger import get_logger


logger = get_logger(__name__)

TRACKED_RESOURCES = ("cpu", "memory")
TERMINAL_PHASES = frozenset({"Succeeded", "Failed"})
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _parse_quantity(dimension: str, value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    try:
        quantity = parse_quantity(value)
    except (ValueError, TypeError, ArithmeticError):
        logger.warning("Malformed quantity treated as zero | dimension=%s | value=%r", dimension, value)
        return Decimal(0)
    if quantity < 0:
        logger.warning("Negative quantity treated as zero | dimension=%s | value=%r", dimension, value)
        return Decimal(0)
    return quantity


@dataclass(frozen=True)
class ResourceVector:
    """CPU in millicores and memory in bytes."""

    cpu: int = 0
    memory: int = 0

    @classmethod
    def from_quantities(cls, quantities: Optional[Mapping[str, Any]]) -> "ResourceVector":
        """Parse a control-plane resource list such as ``{"cpu": "500m", "memory": "1Gi"}``."""
        if not quantities:
            return cls()
        cpu = _parse_quantity("cpu", quantities.get("cpu")) * 1000
        memory = _parse_quantity("memory", quantities.get("memory"))
        return cls(
            cpu=int(cpu.to_integral_value(rounding=ROUND_CEILING)),
            memory=int(memory.to_integral_value(rounding=ROUND_CEILING)),
        )

    def to_quantities(self) -> dict[str, str]:
        if self.cpu % 1000 == 0:
            cpu = str(self.cpu // 1000)
        else:
            cpu = f"{self.cpu}m"
        return {"cpu": cpu, "memory": str(self.memory)}

    def __add__(self, other: "ResourceVector") -> "ResourceVector":
        return ResourceVector(cpu=self.cpu + other.cpu, memory=self.memory + other.memory)

    def __sub__(self, other: "ResourceVector") -> "ResourceVector":
        return ResourceVector(cpu=self.cpu - other.cpu, memory=self.memory - other.memory)

    def get(self, dimension: str) -> int:
        return int(getattr(self, dimension, 0))

    def positive_part(self) -> "ResourceVector":
        return ResourceVector(cpu=max(self.cpu, 0), memory=max(self.memory, 0))

    def is_under(self, other: "ResourceVector") -> bool:
        """True iff every tracked dimension is <= the same dimension of ``other``."""
        return all(self.get(dimension) <= other.get(dimension) for dimension in TRACKED_RESOURCES)

    def is_zero(self) -> bool:
        return all(self.get(dimension) == 0 for dimension in TRACKED_RESOURCES)


class ResourceKind(str, Enum):
    NODE = "node"
    QUEUE = "queue"
    WORKLOAD = "workload"


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    SYNC = "SYNC"


@dataclass(frozen=True)
class NodeInfo:
    name: str
    allocatable: ResourceVector
    ready: bool
    unschedulable: bool = False

    @property
    def schedulable_capacity(self) -> ResourceVector:
        if self.ready and not self.unschedulable:
            return self.allocatable
        return ResourceVector()


@dataclass(frozen=True)
class WorkloadInfo:
    name: str
    namespace: str
    request: ResourceVector
    phase: str = "Running"
    created_at: datetime = EPOCH
    priority: int = 0
    terminating: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def active(self) -> bool:
        return self.phase not in TERMINAL_PHASES and not self.terminating


@dataclass
class QueueStatus:
    deserved: ResourceVector = field(default_factory=ResourceVector)
    allocated: ResourceVector = field(default_factory=ResourceVector)
    used: ResourceVector = field(default_factory=ResourceVector)

    def to_api_dict(self) -> dict[str, dict[str, dict[str, str]]]:
        return {
            "deserved": {"resources": self.deserved.to_quantities()},
            "allocated": {"resources": self.allocated.to_quantities()},
            "used": {"resources": self.used.to_quantities()},
        }


@dataclass
class Queue:
    """Tenant queue custom-resource state."""

    name: str
    namespace: str
    weight: int = 1
    status: QueueStatus = field(default_factory=QueueStatus)


@dataclass(frozen=True)
class WatchEvent:
    type: EventType
    kind: ResourceKind
    obj: Any = None
    objects: tuple[Any, ...] = ()
    resource_version: Optional[str] = None
