from __future__ import annotations

from enum import Enum


class TenantStatus(str, Enum):
    REQUESTED = "Requested"
    PROVISIONING = "Provisioning"
    ACTIVE = "Active"
    DEPROVISIONING = "Deprovisioning"
    DELETED = "Deleted"
    FAILED = "Failed"


class LifecyclePhase(str, Enum):
    PROVISIONING = "provisioning"
    DEPROVISIONING = "deprovisioning"


# Forward path, teardown path, and the two failure edges. Failed only re-enters
# the phase it failed in; the orchestrator checks failed_phase before using it.
ALLOWED_TRANSITIONS: dict[TenantStatus, frozenset[TenantStatus]] = {
    TenantStatus.REQUESTED: frozenset({TenantStatus.PROVISIONING, TenantStatus.ACTIVE}),
    TenantStatus.PROVISIONING: frozenset(
        {TenantStatus.PROVISIONING, TenantStatus.ACTIVE, TenantStatus.FAILED}
    ),
    TenantStatus.ACTIVE: frozenset({TenantStatus.DEPROVISIONING}),
    TenantStatus.DEPROVISIONING: frozenset(
        {TenantStatus.DEPROVISIONING, TenantStatus.DELETED, TenantStatus.FAILED}
    ),
    TenantStatus.FAILED: frozenset(
        {TenantStatus.REQUESTED, TenantStatus.PROVISIONING, TenantStatus.DEPROVISIONING}
    ),
    TenantStatus.DELETED: frozenset(),
}

IN_PROGRESS_STATUS: dict[LifecyclePhase, TenantStatus] = {
    LifecyclePhase.PROVISIONING: TenantStatus.PROVISIONING,
    LifecyclePhase.DEPROVISIONING: TenantStatus.DEPROVISIONING,
}

# Status at which re-running a phase is a no-op success.
TERMINAL_STATUS: dict[LifecyclePhase, TenantStatus] = {
    LifecyclePhase.PROVISIONING: TenantStatus.ACTIVE,
    LifecyclePhase.DEPROVISIONING: TenantStatus.DELETED,
}


def transition_allowed(current: TenantStatus | str, target: TenantStatus | str) -> bool:
    return TenantStatus(target) in ALLOWED_TRANSITIONS.get(TenantStatus(current), frozenset())
