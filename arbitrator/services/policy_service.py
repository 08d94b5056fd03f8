"""Allocation policies mapping queue weights and cluster capacity to deserved shares."""

from __future__ import annotations

from typing import Mapping, Optional, Protocol

from arbitrator.domain.models import ResourceVector


DEFAULT_WEIGHT = 1


class UnknownPolicyError(Exception):
    """Raised when the configured allocation policy is not registered."""


class AllocationPolicy(Protocol):
    name: str

    def compute(
        self,
        weights: Mapping[str, Optional[int]],
        capacity: ResourceVector,
    ) -> dict[str, ResourceVector]: ...


class ProportionalSharePolicy:
    """Split every dimension of capacity by weight, rounding each share down.

    Floor division keeps ``sum(deserved) <= capacity`` per dimension; the
    remainder stays unallocated rather than being handed out.
    """

    name = "proportion"

    def compute(
        self,
        weights: Mapping[str, Optional[int]],
        capacity: ResourceVector,
    ) -> dict[str, ResourceVector]:
        if not weights:
            return {}

        resolved = {
            name: weight if weight is not None and weight > 0 else DEFAULT_WEIGHT
            for name, weight in weights.items()
        }
        total_weight = sum(resolved.values())
        return {
            name: ResourceVector(
                cpu=max(capacity.cpu, 0) * weight // total_weight,
                memory=max(capacity.memory, 0) * weight // total_weight,
            )
            for name, weight in sorted(resolved.items())
        }


_POLICIES: dict[str, AllocationPolicy] = {}


def register_policy(policy: AllocationPolicy) -> None:
    _POLICIES[policy.name] = policy


def get_policy(name: str) -> AllocationPolicy:
    try:
        return _POLICIES[name]
    except KeyError as exc:
        raise UnknownPolicyError(
            f"Unknown allocation policy '{name}'. Registered: {sorted(_POLICIES)}"
        ) from exc


register_policy(ProportionalSharePolicy())
