"""Static catalogue of the hosting plans customers can purchase."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Sequence


class ConfigurationFailure(LookupError):
    """Raised when a plan identifier does not map to a supported plan."""

    def __init__(self, plan_id: object) -> None:
        super().__init__(f"Unknown hosting plan {plan_id!r}")
        self.plan_id = plan_id


class Plan(str, Enum):
    PLAN_2GB = "plan_2gb"
    PLAN_4GB = "plan_4gb"


@dataclass(frozen=True)
class PlanResources:
    """Resource limits applied to every server created for a plan."""

    memory_mb: int
    slots: int
    disk_mb: int = 5000
    io: int = 500
    cpu: int = 0
    swap_mb: int = 0
    databases: int = 0
    allocations: int = 1

    def to_public_dict(self) -> Dict[str, int]:
        return {
            "memory_mb": self.memory_mb,
            "slots": self.slots,
            "disk_mb": self.disk_mb,
            "io": self.io,
            "cpu": self.cpu,
        }


_PLAN_RESOURCES: Dict[Plan, PlanResources] = {
    Plan.PLAN_2GB: PlanResources(memory_mb=2048, slots=20),
    Plan.PLAN_4GB: PlanResources(memory_mb=4096, slots=40),
}


def resolve_plan(plan_id: object) -> Plan:
    """Return the :class:`Plan` for ``plan_id`` or raise :class:`ConfigurationFailure`."""

    if isinstance(plan_id, Plan):
        return plan_id
    if not isinstance(plan_id, str):
        raise ConfigurationFailure(plan_id)
    try:
        return Plan(plan_id.strip())
    except ValueError as exc:
        raise ConfigurationFailure(plan_id) from exc


def plan_resources(plan: Plan) -> PlanResources:
    return _PLAN_RESOURCES[plan]


def list_plans() -> Sequence[Plan]:
    return list(Plan)


__all__ = [
    "ConfigurationFailure",
    "Plan",
    "PlanResources",
    "list_plans",
    "plan_resources",
    "resolve_plan",
]
