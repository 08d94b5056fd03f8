"""Repository layer responsible for all control-plane access.

Services only see domain objects (``NodeInfo``, ``Queue``, ``WorkloadInfo``)
and the ``ControlPlaneError`` hierarchy; the Kubernetes client types stay in
this module.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, Mapping, Optional, Protocol

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

from arbitrator.domain.models import (
    EPOCH,
    EventType,
    NodeInfo,
    Queue,
    QueueStatus,
    ResourceKind,
    ResourceVector,
    WatchEvent,
    WorkloadInfo,
)
from arbitrator.utils.config import Settings, get_settings
from arbitrator.utils.logger import get_logger


logger = get_logger(__name__)

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_GONE = 410

ADOPTED_ANNOTATION = "arbitrator.incubator.k8s.io/adopted"


class ControlPlaneError(Exception):
    """Base failure for any control-plane call."""


class TransientControlPlaneError(ControlPlaneError):
    """Timeouts, conflicts and unavailability; retried on the next cycle."""


class NotFoundError(ControlPlaneError):
    """Raised when the addressed object does not exist."""


class AlreadyExistsError(ControlPlaneError):
    """Raised when a create collides with an existing object."""


class WatchExpiredError(ControlPlaneError):
    """Raised when a watch resource version is too old and a re-list is needed."""


@dataclass(frozen=True)
class ListResult:
    objects: list[Any]
    resource_version: Optional[str] = None


@dataclass(frozen=True)
class QuotaRecord:
    """A namespace ResourceQuota as seen by the arbitrator.

    ``managed`` quotas carry the managed-by label. ``adopted`` ones existed
    before the arbitrator took them over and are never deleted by it.
    """

    namespace: str
    name: str
    hard: dict[str, str] = field(default_factory=dict)
    managed: bool = True
    adopted: bool = False


class ControlPlane(Protocol):
    def list_objects(self, kind: ResourceKind) -> ListResult: ...

    def watch_objects(
        self,
        kind: ResourceKind,
        resource_version: Optional[str],
        timeout_seconds: int,
    ) -> Iterator[WatchEvent]: ...

    def list_quotas(self) -> dict[tuple[str, str], QuotaRecord]: ...

    def upsert_quota(self, namespace: str, name: str, hard: Mapping[str, str], adopt: bool = False) -> None: ...

    def delete_quota(self, namespace: str, name: str) -> None: ...

    def delete_workload(self, namespace: str, name: str) -> None: ...

    def update_queue_status(self, queue: Queue, status: QueueStatus) -> None: ...

    def ensure_queue_crd(self) -> None: ...


def build_quota_hard(vector: ResourceVector, prefixes: tuple[str, ...]) -> dict[str, str]:
    quantities = vector.to_quantities()
    hard: dict[str, str] = {}
    for prefix in prefixes:
        for dimension, value in quantities.items():
            hard[f"{prefix}.{dimension}"] = value
    return hard


def quota_hard_vectors(hard: Mapping[str, str], prefixes: tuple[str, ...]) -> dict[str, ResourceVector]:
    """Parse the ``<prefix>.cpu`` / ``<prefix>.memory`` entries of a quota back into vectors."""
    return {
        prefix: ResourceVector.from_quantities(
            {
                "cpu": hard.get(f"{prefix}.cpu"),
                "memory": hard.get(f"{prefix}.memory"),
            }
        )
        for prefix in prefixes
    }


def _translate_api_exception(exc: ApiException, action: str) -> ControlPlaneError:
    message = f"{action} failed: {exc.status} {exc.reason}"
    if exc.status == HTTP_NOT_FOUND:
        return NotFoundError(message)
    if exc.status == HTTP_CONFLICT and "AlreadyExists" in str(exc.body or ""):
        return AlreadyExistsError(message)
    if exc.status == HTTP_GONE:
        return WatchExpiredError(message)
    return TransientControlPlaneError(message)


def _workload_request(pod: client.V1Pod) -> ResourceVector:
    """Effective request: containers summed, then raised to the largest init container."""
    spec = pod.spec
    if spec is None:
        return ResourceVector()

    total = ResourceVector()
    for container in spec.containers or []:
        resources = container.resources
        total = total + ResourceVector.from_quantities(resources.requests if resources else None)

    for container in spec.init_containers or []:
        resources = container.resources
        init_request = ResourceVector.from_quantities(resources.requests if resources else None)
        total = ResourceVector(
            cpu=max(total.cpu, init_request.cpu),
            memory=max(total.memory, init_request.memory),
        )
    return total


def workload_from_k8s(pod: client.V1Pod) -> WorkloadInfo:
    metadata = pod.metadata
    created_at: datetime = metadata.creation_timestamp or EPOCH
    phase = pod.status.phase if pod.status is not None and pod.status.phase else "Pending"
    priority = pod.spec.priority if pod.spec is not None and pod.spec.priority is not None else 0
    return WorkloadInfo(
        name=metadata.name,
        namespace=metadata.namespace,
        request=_workload_request(pod),
        phase=phase,
        created_at=created_at,
        priority=int(priority),
        terminating=metadata.deletion_timestamp is not None,
    )


def node_from_k8s(node: client.V1Node) -> NodeInfo:
    status = node.status
    resources = None
    ready = False
    if status is not None:
        resources = status.allocatable or status.capacity
        ready = any(
            condition.type == "Ready" and condition.status == "True"
            for condition in status.conditions or []
        )
    return NodeInfo(
        name=node.metadata.name,
        allocatable=ResourceVector.from_quantities(resources),
        ready=ready,
        unschedulable=bool(node.spec.unschedulable) if node.spec is not None else False,
    )


def _normalize_weight(raw: Any, name: str) -> int:
    if raw is None:
        return 1
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        logger.warning("Invalid queue weight treated as 1 | queue=%s | weight=%r", name, raw)
        return 1
    return raw


def _status_vector(status: Mapping[str, Any], key: str) -> ResourceVector:
    block = status.get(key) or {}
    return ResourceVector.from_quantities(block.get("resources"))


def queue_from_k8s(obj: Mapping[str, Any]) -> Queue:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    name = metadata.get("name", "")
    return Queue(
        name=name,
        namespace=metadata.get("namespace", ""),
        weight=_normalize_weight(spec.get("weight"), name),
        status=QueueStatus(
            deserved=_status_vector(status, "deserved"),
            allocated=_status_vector(status, "allocated"),
            used=_status_vector(status, "used"),
        ),
    )


def _resource_version(kind: ResourceKind, raw: Any) -> Optional[str]:
    if kind is ResourceKind.QUEUE:
        return (raw.get("metadata") or {}).get("resourceVersion")
    return raw.metadata.resource_version if raw.metadata is not None else None


class KubernetesControlPlane:
    """``ControlPlane`` backed by the official Kubernetes Python client."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._load_config()
        self._core = client.CoreV1Api()
        self._custom = client.CustomObjectsApi()
        self._extensions = client.ApiextensionsV1Api()
        self._timeout = self._settings.request_timeout_seconds

    def _load_config(self) -> None:
        if self._settings.kubeconfig_path:
            config.load_kube_config(config_file=self._settings.kubeconfig_path)
            logger.info("Loaded Kubernetes configuration | path=%s", self._settings.kubeconfig_path)
            return
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config()
            logger.info("Loaded local Kubernetes configuration")

    def _list_call(self, kind: ResourceKind):
        if kind is ResourceKind.NODE:
            return self._core.list_node, ()
        if kind is ResourceKind.WORKLOAD:
            return self._core.list_pod_for_all_namespaces, ()
        return self._custom.list_cluster_custom_object, (
            self._settings.queue_crd_group,
            self._settings.queue_crd_version,
            self._settings.queue_crd_plural,
        )

    @staticmethod
    def _convert(kind: ResourceKind, raw: Any) -> Any:
        if kind is ResourceKind.NODE:
            return node_from_k8s(raw)
        if kind is ResourceKind.WORKLOAD:
            return workload_from_k8s(raw)
        return queue_from_k8s(raw)

    def list_objects(self, kind: ResourceKind) -> ListResult:
        call, args = self._list_call(kind)
        try:
            response = call(*args, _request_timeout=self._timeout)
        except ApiException as exc:
            raise _translate_api_exception(exc, f"list {kind.value}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientControlPlaneError(f"list {kind.value} failed: {exc}") from exc

        if kind is ResourceKind.QUEUE:
            items = response.get("items") or []
            resource_version = (response.get("metadata") or {}).get("resourceVersion")
        else:
            items = response.items or []
            resource_version = response.metadata.resource_version if response.metadata else None
        return ListResult(
            objects=[self._convert(kind, item) for item in items],
            resource_version=resource_version,
        )

    def watch_objects(
        self,
        kind: ResourceKind,
        resource_version: Optional[str],
        timeout_seconds: int,
    ) -> Iterator[WatchEvent]:
        call, args = self._list_call(kind)
        stream_kwargs: dict[str, Any] = {"timeout_seconds": timeout_seconds}
        if resource_version:
            stream_kwargs["resource_version"] = resource_version

        watcher = watch.Watch()
        try:
            for event in watcher.stream(call, *args, **stream_kwargs):
                event_type = event.get("type")
                raw = event.get("object")
                if event_type == "ERROR":
                    code = (event.get("raw_object") or {}).get("code")
                    if code == HTTP_GONE:
                        raise WatchExpiredError(f"watch {kind.value} expired")
                    raise TransientControlPlaneError(f"watch {kind.value} error: {event.get('raw_object')}")
                if event_type not in (EventType.ADDED.value, EventType.MODIFIED.value, EventType.DELETED.value):
                    continue
                yield WatchEvent(
                    type=EventType(event_type),
                    kind=kind,
                    obj=self._convert(kind, raw),
                    resource_version=_resource_version(kind, raw),
                )
        except ApiException as exc:
            raise _translate_api_exception(exc, f"watch {kind.value}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientControlPlaneError(f"watch {kind.value} failed: {exc}") from exc
        finally:
            watcher.stop()

    def list_quotas(self) -> dict[tuple[str, str], QuotaRecord]:
        """Every ResourceQuota in the cluster; unlabelled ones are candidates for adoption."""
        try:
            response = self._core.list_resource_quota_for_all_namespaces(_request_timeout=self._timeout)
        except ApiException as exc:
            raise _translate_api_exception(exc, "list resource quotas") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientControlPlaneError(f"list resource quotas failed: {exc}") from exc

        records: dict[tuple[str, str], QuotaRecord] = {}
        for item in response.items or []:
            metadata = item.metadata
            labels = metadata.labels or {}
            annotations = metadata.annotations or {}
            hard = dict(item.spec.hard or {}) if item.spec is not None else {}
            record = QuotaRecord(
                namespace=metadata.namespace,
                name=metadata.name,
                hard={key: str(value) for key, value in hard.items()},
                managed=labels.get(self._settings.managed_by_label_key) == self._settings.managed_by_label_value,
                adopted=annotations.get(ADOPTED_ANNOTATION) == "true",
            )
            records[(record.namespace, record.name)] = record
        return records

    def upsert_quota(self, namespace: str, name: str, hard: Mapping[str, str], adopt: bool = False) -> None:
        """Create the quota, or patch it when it exists; ``adopt`` patches a pre-existing quota in place."""
        labels = {self._settings.managed_by_label_key: self._settings.managed_by_label_value}
        if not adopt:
            body = client.V1ResourceQuota(
                metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
                spec=client.V1ResourceQuotaSpec(hard=dict(hard)),
            )
            try:
                self._core.create_namespaced_resource_quota(
                    namespace=namespace,
                    body=body,
                    _request_timeout=self._timeout,
                )
                logger.info("Resource quota created | namespace=%s | name=%s", namespace, name)
                return
            except ApiException as exc:
                error = _translate_api_exception(exc, f"create quota {namespace}/{name}")
                if not isinstance(error, AlreadyExistsError):
                    raise error from exc
            except urllib3.exceptions.HTTPError as exc:
                raise TransientControlPlaneError(f"create quota {namespace}/{name} failed: {exc}") from exc

        metadata: dict[str, Any] = {"labels": labels}
        if adopt:
            metadata["annotations"] = {ADOPTED_ANNOTATION: "true"}
        patch = {"metadata": metadata, "spec": {"hard": dict(hard)}}
        try:
            self._core.patch_namespaced_resource_quota(
                name=name,
                namespace=namespace,
                body=patch,
                _request_timeout=self._timeout,
            )
            logger.info("Resource quota updated | namespace=%s | name=%s | adopted=%s", namespace, name, adopt)
        except ApiException as exc:
            raise _translate_api_exception(exc, f"patch quota {namespace}/{name}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientControlPlaneError(f"patch quota {namespace}/{name} failed: {exc}") from exc

    def delete_quota(self, namespace: str, name: str) -> None:
        try:
            self._core.delete_namespaced_resource_quota(
                name=name,
                namespace=namespace,
                _request_timeout=self._timeout,
            )
        except ApiException as exc:
            raise _translate_api_exception(exc, f"delete quota {namespace}/{name}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientControlPlaneError(f"delete quota {namespace}/{name} failed: {exc}") from exc

    def delete_workload(self, namespace: str, name: str) -> None:
        kwargs: dict[str, Any] = {"_request_timeout": self._timeout}
        if self._settings.eviction_grace_period_seconds is not None:
            kwargs["grace_period_seconds"] = self._settings.eviction_grace_period_seconds
        try:
            self._core.delete_namespaced_pod(name=name, namespace=namespace, **kwargs)
        except ApiException as exc:
            raise _translate_api_exception(exc, f"delete pod {namespace}/{name}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientControlPlaneError(f"delete pod {namespace}/{name} failed: {exc}") from exc

    def update_queue_status(self, queue: Queue, status: QueueStatus) -> None:
        try:
            self._custom.patch_namespaced_custom_object_status(
                self._settings.queue_crd_group,
                self._settings.queue_crd_version,
                queue.namespace,
                self._settings.queue_crd_plural,
                queue.name,
                {"status": status.to_api_dict()},
                _request_timeout=self._timeout,
            )
        except ApiException as exc:
            raise _translate_api_exception(exc, f"patch queue status {queue.namespace}/{queue.name}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientControlPlaneError(
                f"patch queue status {queue.namespace}/{queue.name} failed: {exc}"
            ) from exc

    def ensure_queue_crd(self) -> None:
        """Register the Queue CRD; an existing registration counts as success."""
        settings = self._settings
        resources_schema = client.V1JSONSchemaProps(
            type="object",
            properties={"resources": client.V1JSONSchemaProps(type="object", x_kubernetes_preserve_unknown_fields=True)},
        )
        schema = client.V1JSONSchemaProps(
            type="object",
            properties={
                "spec": client.V1JSONSchemaProps(
                    type="object",
                    properties={"weight": client.V1JSONSchemaProps(type="integer", minimum=1)},
                ),
                "status": client.V1JSONSchemaProps(
                    type="object",
                    properties={
                        "deserved": resources_schema,
                        "allocated": resources_schema,
                        "used": resources_schema,
                    },
                ),
            },
        )
        body = client.V1CustomResourceDefinition(
            metadata=client.V1ObjectMeta(name=f"{settings.queue_crd_plural}.{settings.queue_crd_group}"),
            spec=client.V1CustomResourceDefinitionSpec(
                group=settings.queue_crd_group,
                scope="Namespaced",
                names=client.V1CustomResourceDefinitionNames(
                    plural=settings.queue_crd_plural,
                    singular=settings.queue_crd_kind.lower(),
                    kind=settings.queue_crd_kind,
                ),
                versions=[
                    client.V1CustomResourceDefinitionVersion(
                        name=settings.queue_crd_version,
                        served=True,
                        storage=True,
                        schema=client.V1CustomResourceValidation(open_apiv3_schema=schema),
                        subresources=client.V1CustomResourceSubresources(status={}),
                    )
                ],
            ),
        )
        try:
            self._extensions.create_custom_resource_definition(body=body, _request_timeout=self._timeout)
            logger.info("Queue CRD registered | name=%s", body.metadata.name)
        except ApiException as exc:
            error = _translate_api_exception(exc, "create queue CRD")
            if isinstance(error, AlreadyExistsError):
                logger.info("Queue CRD already registered | name=%s", body.metadata.name)
                return
            raise error from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientControlPlaneError(f"create queue CRD failed: {exc}") from exc
