"""End-to-end arbitration cycles against the in-memory control plane."""

from __future__ import annotations

import threading
import time

import pytest
from conftest import GI, make_node, make_queue, make_workload

from arbitrator.domain.constraints import build_arbitration_config
from arbitrator.domain.models import ResourceVector
from arbitrator.repository.control_plane import QuotaRecord
from arbitrator.services.cache_service import ClusterStateCache
from arbitrator.services.controller_service import ArbitrationController
from arbitrator.services.policy_service import get_policy
from arbitrator.services.preemption_service import PreemptionService
from arbitrator.services.quota_service import QuotaOutcome, QuotaService


@pytest.fixture
def cluster(fake_control_plane, test_settings):
    fake_control_plane.put_node(make_node("node01", cpu="15", memory="15Gi"))
    fake_control_plane.put_queue(make_queue("queue01", "ns01", weight=1))
    fake_control_plane.put_queue(make_queue("queue02", "ns02", weight=2))
    cache = ClusterStateCache(fake_control_plane, settings=test_settings)
    cache.sync()
    fake_control_plane.drain_events()

    config = build_arbitration_config(test_settings)
    controller = ArbitrationController(
        cache=cache,
        policy=get_policy("proportion"),
        quota_service=QuotaService(fake_control_plane, settings=test_settings, config=config),
        preemption_service=PreemptionService(fake_control_plane),
        control_plane=fake_control_plane,
        settings=test_settings,
        config=config,
    )
    return fake_control_plane, cache, controller


def _settle(cache: ClusterStateCache, fake) -> None:
    for event in fake.drain_events():
        cache.apply_event(event)


def _quota_cpu(fake, namespace: str, name: str) -> str:
    return fake.quotas[(namespace, name)].hard["limits.cpu"]


def test_two_queues_receive_weighted_quotas(cluster) -> None:
    fake, cache, controller = cluster

    report = controller.reconcile_once()

    assert _quota_cpu(fake, "ns01", "queue01") == "5"
    assert _quota_cpu(fake, "ns02", "queue02") == "10"
    assert fake.quotas[("ns02", "queue02")].hard["requests.memory"] == str(10 * GI)
    assert report.queues["queue01"].quota_outcome is QuotaOutcome.PUBLISHED
    assert report.queues["queue01"].allocated == ResourceVector(cpu=5000, memory=5 * GI)
    assert report.errors == []


def test_workloads_within_share_are_not_evicted(cluster) -> None:
    fake, cache, controller = cluster
    controller.reconcile_once()
    for index in range(1, 6):
        fake.put_workload(make_workload(f"ns01-pod{index:02d}", "ns01", created_offset=index))
    for index in range(1, 9):
        fake.put_workload(make_workload(f"ns02-pod{index:02d}", "ns02", created_offset=index))
    _settle(cache, fake)

    report = controller.reconcile_once()

    assert report.preemption.evicted == []
    assert len(fake.running_in("ns01")) == 5
    assert len(fake.running_in("ns02")) == 8
    assert report.queues["queue02"].used == ResourceVector(cpu=8000, memory=8 * GI)


def test_new_queue_shrinks_shares_and_preempts(cluster) -> None:
    fake, cache, controller = cluster
    for index in range(1, 6):
        fake.put_workload(make_workload(f"ns01-pod{index:02d}", "ns01", created_offset=index))
    for index in range(1, 9):
        fake.put_workload(make_workload(f"ns02-pod{index:02d}", "ns02", created_offset=index))
    _settle(cache, fake)
    controller.reconcile_once()
    _settle(cache, fake)

    fake.put_queue(make_queue("queue03", "ns03", weight=2))
    _settle(cache, fake)
    report = controller.reconcile_once()

    assert [_quota_cpu(fake, f"ns0{i}", f"queue0{i}") for i in (1, 2, 3)] == ["3", "6", "6"]
    assert [w.name for w in report.preemption.evicted_in("ns01")] == ["ns01-pod05", "ns01-pod04"]
    assert [w.name for w in report.preemption.evicted_in("ns02")] == ["ns02-pod08", "ns02-pod07"]
    assert len(fake.running_in("ns01")) == 3
    assert len(fake.running_in("ns02")) == 6

    _settle(cache, fake)
    for name in ("queue01", "queue02"):
        assert cache.snapshot().queues[name].used_under_deserved()


def test_unchanged_cluster_writes_nothing_on_second_cycle(cluster) -> None:
    fake, cache, controller = cluster
    controller.reconcile_once()
    _settle(cache, fake)
    quota_writes = len(fake.quota_writes)
    status_updates = len(fake.status_updates)

    report = controller.reconcile_once()

    assert len(fake.quota_writes) == quota_writes
    assert len(fake.status_updates) == status_updates
    assert {state.quota_outcome for state in report.queues.values()} == {QuotaOutcome.UNCHANGED}


def test_queue_status_carries_deserved_allocated_and_used(cluster) -> None:
    fake, cache, controller = cluster
    fake.put_workload(make_workload("ns01-pod01", "ns01"))
    _settle(cache, fake)

    controller.reconcile_once()

    status = fake.queues[("ns01", "queue01")].status
    assert status.deserved == ResourceVector(cpu=5000, memory=5 * GI)
    assert status.allocated == status.deserved
    assert status.used == ResourceVector(cpu=1000, memory=GI)


def test_failed_quota_write_keeps_previous_allocation(cluster) -> None:
    fake, cache, controller = cluster
    controller.reconcile_once()
    _settle(cache, fake)

    fake.put_queue(make_queue("queue03", "ns03", weight=2))
    _settle(cache, fake)
    fake.fail_quota_writes = True
    report = controller.reconcile_once()

    assert report.queues["queue01"].quota_outcome is QuotaOutcome.FAILED
    assert report.queues["queue01"].deserved == ResourceVector(cpu=3000, memory=3 * GI)
    assert report.queues["queue01"].allocated == ResourceVector(cpu=5000, memory=5 * GI)
    assert report.queues["queue03"].allocated.is_zero()
    assert any("publish quota ns01/queue01" in error for error in report.errors)
    assert _quota_cpu(fake, "ns01", "queue01") == "5"


def test_quota_list_failure_skips_publishing_and_teardown(cluster) -> None:
    fake, cache, controller = cluster
    fake.quotas[("ns05", "queue05")] = QuotaRecord(namespace="ns05", name="queue05", hard={})
    fake.fail_list_quotas = True

    report = controller.reconcile_once()

    assert fake.quota_writes == []
    assert report.removed_quotas == []
    assert ("ns05", "queue05") in fake.quotas
    assert report.errors[0].startswith("list quotas")


def test_quota_of_deleted_queue_is_torn_down(cluster) -> None:
    fake, cache, controller = cluster
    controller.reconcile_once()
    _settle(cache, fake)

    fake.remove_queue("ns02", "queue02")
    _settle(cache, fake)
    report = controller.reconcile_once()

    assert report.removed_quotas == [("ns02", "queue02")]
    assert ("ns02", "queue02") not in fake.quotas
    assert _quota_cpu(fake, "ns01", "queue01") == "15"


def test_existing_namespace_quota_is_adopted(cluster) -> None:
    fake, cache, controller = cluster
    fake.quotas[("ns01", "rq01")] = QuotaRecord("ns01", "rq01", {"limits.cpu": "1"}, managed=False)

    report = controller.reconcile_once()

    adopted = fake.quotas[("ns01", "rq01")]
    assert adopted.hard["limits.cpu"] == "5"
    assert (adopted.managed, adopted.adopted) == (True, True)
    assert ("ns01", "queue01") not in fake.quotas
    assert report.queues["queue01"].quota_outcome is QuotaOutcome.PUBLISHED
    assert _quota_cpu(fake, "ns02", "queue02") == "10"


def test_adopted_quota_is_updated_in_place_on_later_cycles(cluster) -> None:
    fake, cache, controller = cluster
    fake.quotas[("ns01", "rq01")] = QuotaRecord("ns01", "rq01", {"limits.cpu": "1"}, managed=False)
    controller.reconcile_once()
    _settle(cache, fake)

    fake.put_queue(make_queue("queue03", "ns03", weight=2))
    _settle(cache, fake)
    controller.reconcile_once()

    assert _quota_cpu(fake, "ns01", "rq01") == "3"
    assert ("ns01", "queue01") not in fake.quotas


def test_adopted_quota_survives_queue_removal(cluster) -> None:
    fake, cache, controller = cluster
    fake.quotas[("ns01", "rq01")] = QuotaRecord("ns01", "rq01", {"limits.cpu": "1"}, managed=False)
    controller.reconcile_once()
    _settle(cache, fake)

    fake.remove_queue("ns01", "queue01")
    _settle(cache, fake)
    report = controller.reconcile_once()

    assert report.removed_quotas == []
    assert ("ns01", "rq01") in fake.quotas
    assert _quota_cpu(fake, "ns02", "queue02") == "15"


def test_eviction_failure_is_reported(cluster) -> None:
    fake, cache, controller = cluster
    for index in range(1, 8):
        fake.put_workload(make_workload(f"ns01-pod{index:02d}", "ns01", created_offset=index))
    fake.failing_workloads.add(("ns01", "ns01-pod07"))
    _settle(cache, fake)

    report = controller.reconcile_once()

    assert [(f.namespace, f.name) for f in report.preemption.failed] == [("ns01", "ns01-pod07")]
    assert any(error.startswith("evict ns01/ns01-pod07") for error in report.errors)
    assert controller.latest_report is report


def test_run_loop_reconciles_until_stopped(cluster) -> None:
    fake, cache, controller = cluster
    stop_event = threading.Event()
    thread = threading.Thread(target=controller.run, args=(stop_event,), daemon=True)
    thread.start()
    try:
        deadline = time.monotonic() + 5
        while controller.latest_report is None and time.monotonic() < deadline:
            time.sleep(0.01)
        assert controller.latest_report is not None
        assert controller.running

        first = controller.latest_report
        controller.request_reconcile()
        deadline = time.monotonic() + 5
        while controller.latest_report is first and time.monotonic() < deadline:
            time.sleep(0.01)
        assert controller.latest_report is not first
    finally:
        stop_event.set()
        thread.join(timeout=5)
    assert not thread.is_alive()
    assert not controller.running
