"""HTTP controller layer exposing arbitration state to operators."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from arbitrator.controllers.dependencies import get_cache, get_controller, require_operator
from arbitrator.domain.models import ResourceVector
from arbitrator.domain.queue_info import QueueInfo
from arbitrator.services.cache_service import ClusterStateCache
from arbitrator.services.controller_service import ArbitrationController
from arbitrator.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["arbitration"])


class ResourcesResponse(BaseModel):
    cpu_millicores: int = Field(ge=0)
    memory_bytes: int = Field(ge=0)

    @classmethod
    def from_vector(cls, vector: ResourceVector) -> "ResourcesResponse":
        return cls(cpu_millicores=max(vector.cpu, 0), memory_bytes=max(vector.memory, 0))


class QueueResponse(BaseModel):
    name: str
    namespace: str
    weight: int = Field(gt=0)
    deserved: ResourcesResponse
    allocated: ResourcesResponse
    used: ResourcesResponse
    running_workloads: int = Field(ge=0)
    used_under_deserved: bool

    @classmethod
    def from_queue_info(cls, queue_info: QueueInfo) -> "QueueResponse":
        return cls(
            name=queue_info.name,
            namespace=queue_info.namespace,
            weight=queue_info.weight,
            deserved=ResourcesResponse.from_vector(queue_info.deserved()),
            allocated=ResourcesResponse.from_vector(queue_info.allocated()),
            used=ResourcesResponse.from_vector(queue_info.used()),
            running_workloads=len(queue_info.active_workloads()),
            used_under_deserved=queue_info.used_under_deserved(),
        )


class SnapshotResponse(BaseModel):
    generation: int = Field(ge=0)
    taken_at: datetime
    capacity: ResourcesResponse
    queues: list[QueueResponse]


class HealthResponse(BaseModel):
    cache_synced: bool
    controller_running: bool


class ObjectRefResponse(BaseModel):
    namespace: str
    name: str


class QueueCycleResponse(BaseModel):
    name: str
    namespace: str
    weight: int
    deserved: ResourcesResponse
    allocated: ResourcesResponse
    used: ResourcesResponse
    quota_outcome: str


class CycleReportResponse(BaseModel):
    started_at: datetime
    generation: int
    duration_seconds: float = Field(ge=0.0)
    capacity: ResourcesResponse
    queues: list[QueueCycleResponse]
    evicted: list[ObjectRefResponse]
    failed_evictions: list[ObjectRefResponse]
    unresolved_queues: list[str]
    removed_quotas: list[ObjectRefResponse]
    errors: list[str]


class ReconcileResponse(BaseModel):
    status: str


@router.get("/healthz", response_model=HealthResponse, status_code=status.HTTP_200_OK)
def healthz(
    cache: ClusterStateCache = Depends(get_cache),
    controller: ArbitrationController = Depends(get_controller),
) -> HealthResponse:
    return HealthResponse(cache_synced=cache.has_synced, controller_running=controller.running)


@router.get("/snapshot", response_model=SnapshotResponse, status_code=status.HTTP_200_OK)
def get_snapshot(cache: ClusterStateCache = Depends(get_cache)) -> SnapshotResponse:
    snapshot = cache.snapshot()
    return SnapshotResponse(
        generation=snapshot.generation,
        taken_at=snapshot.taken_at,
        capacity=ResourcesResponse.from_vector(snapshot.capacity),
        queues=[QueueResponse.from_queue_info(snapshot.queues[name]) for name in sorted(snapshot.queues)],
    )


@router.get("/queues/{name}", response_model=QueueResponse, status_code=status.HTTP_200_OK)
def get_queue(name: str, cache: ClusterStateCache = Depends(get_cache)) -> QueueResponse:
    queue_info = cache.snapshot().queues.get(name)
    if queue_info is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Queue '{name}' not found",
        )
    return QueueResponse.from_queue_info(queue_info)


@router.get("/cycles/latest", response_model=CycleReportResponse, status_code=status.HTTP_200_OK)
def get_latest_cycle(
    controller: ArbitrationController = Depends(get_controller),
) -> CycleReportResponse:
    report = controller.latest_report
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No reconcile cycle has completed yet",
        )
    return CycleReportResponse(
        started_at=report.started_at,
        generation=report.generation,
        duration_seconds=report.duration_seconds,
        capacity=ResourcesResponse.from_vector(report.capacity),
        queues=[
            QueueCycleResponse(
                name=state.name,
                namespace=state.namespace,
                weight=state.weight,
                deserved=ResourcesResponse.from_vector(state.deserved),
                allocated=ResourcesResponse.from_vector(state.allocated),
                used=ResourcesResponse.from_vector(state.used),
                quota_outcome=state.quota_outcome.value,
            )
            for state in report.queues.values()
        ],
        evicted=[
            ObjectRefResponse(namespace=workload.namespace, name=workload.name)
            for workload in report.preemption.evicted
        ],
        failed_evictions=[
            ObjectRefResponse(namespace=failure.namespace, name=failure.name)
            for failure in report.preemption.failed
        ],
        unresolved_queues=report.preemption.unresolved_queues,
        removed_quotas=[
            ObjectRefResponse(namespace=namespace, name=name) for namespace, name in report.removed_quotas
        ],
        errors=report.errors,
    )


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_operator)],
)
async def trigger_reconcile(
    controller: ArbitrationController = Depends(get_controller),
) -> ReconcileResponse:
    controller.request_reconcile()
    logger.info("Reconcile requested by operator")
    return ReconcileResponse(status="ACCEPTED")
