from __future__ import annotations

import dataclasses
import time
from enum import Enum
from typing import TYPE_CHECKING, Callable

from .errors import InvalidTransitionError
from .settings import settings

if TYPE_CHECKING:
    from .models import MicroserviceDefinition


# Reasons an upgrade (or a microservice instance) was terminated.
MS_UNREG_EXCH_FAILED = 200
MS_CLEAR_OLD_AGS_FAILED = 201
MS_EXEC_FAILED = 202
MS_REREG_EXCH_FAILED = 203
MS_IMAGE_LOAD_FAILED = 204
MS_DELETED_BY_UPGRADE_PROCESS = 205
MS_DELETED_FOR_AG_ENDED = 206

_REASON_DESCRIPTIONS = {
    MS_UNREG_EXCH_FAILED: "Unregistering microservice on exchange failed",
    MS_CLEAR_OLD_AGS_FAILED: "Clearing old agreements failed",
    MS_EXEC_FAILED: "Execution failed",
    MS_REREG_EXCH_FAILED: "Reregistering microservice on exchange failed",
    MS_IMAGE_LOAD_FAILED: "Image loading failed",
    MS_DELETED_BY_UPGRADE_PROCESS: "Deleted by upgrading process",
    MS_DELETED_FOR_AG_ENDED: "Deleted for agreement ended",
}


def decode_reason_code(code: int) -> str:
    return _REASON_DESCRIPTIONS.get(code, "unknown reason code, device might be downlevel")


class UpgradeState(str, Enum):
    STABLE = "stable"
    STARTED = "started"
    UNREGISTERED = "unregistered"
    AGREEMENTS_CLEARED = "agreements_cleared"
    EXECUTION_STARTED = "execution_started"
    REREGISTERED = "reregistered"
    FAILED = "failed"


IN_PROGRESS_STATES = frozenset(
    {
        UpgradeState.STARTED,
        UpgradeState.UNREGISTERED,
        UpgradeState.AGREEMENTS_CLEARED,
        UpgradeState.EXECUTION_STARTED,
    }
)

ALLOWED_TRANSITIONS: dict[UpgradeState, frozenset[UpgradeState]] = {
    UpgradeState.STABLE: frozenset({UpgradeState.STARTED}),
    UpgradeState.STARTED: frozenset({UpgradeState.UNREGISTERED, UpgradeState.FAILED}),
    UpgradeState.UNREGISTERED: frozenset({UpgradeState.AGREEMENTS_CLEARED, UpgradeState.FAILED}),
    UpgradeState.AGREEMENTS_CLEARED: frozenset({UpgradeState.EXECUTION_STARTED, UpgradeState.FAILED}),
    UpgradeState.EXECUTION_STARTED: frozenset({UpgradeState.REREGISTERED, UpgradeState.FAILED}),
    UpgradeState.REREGISTERED: frozenset(),
    UpgradeState.FAILED: frozenset(),
}

# Audit timestamp written when a record enters each state.
_TIMESTAMP_FIELDS = {
    UpgradeState.STARTED: "upgrade_start_time",
    UpgradeState.UNREGISTERED: "upgrade_ms_unregistered_time",
    UpgradeState.AGREEMENTS_CLEARED: "upgrade_agreements_cleared_time",
    UpgradeState.EXECUTION_STARTED: "upgrade_execution_start_time",
    UpgradeState.REREGISTERED: "upgrade_ms_reregistered_time",
    UpgradeState.FAILED: "upgrade_failed_time",
}


def state_from_timestamps(msdef: "MicroserviceDefinition") -> UpgradeState:
    """Derive the upgrade state from the audit timestamps.

    Used for records written before the state was stored explicitly.
    """
    if msdef.upgrade_failed_time:
        return UpgradeState.FAILED
    for state in (
        UpgradeState.REREGISTERED,
        UpgradeState.EXECUTION_STARTED,
        UpgradeState.AGREEMENTS_CLEARED,
        UpgradeState.UNREGISTERED,
        UpgradeState.STARTED,
    ):
        if getattr(msdef, _TIMESTAMP_FIELDS[state]):
            return state
    return UpgradeState.STABLE


def upgrade_in_progress(msdef: "MicroserviceDefinition") -> bool:
    return (
        msdef.upgrade_start_time != 0
        and msdef.upgrade_ms_reregistered_time == 0
        and msdef.upgrade_failed_time == 0
    ) or msdef.upgrade_state in IN_PROGRESS_STATES


def transition(
    msdef: "MicroserviceDefinition",
    target: UpgradeState,
    now: int | None = None,
    reason: int = 0,
    description: str = "",
) -> "MicroserviceDefinition":
    """Return a copy of msdef moved to the target state.

    The audit timestamp of the target state is set once; a timestamp that is
    already set is kept.
    """
    target = UpgradeState(target)
    current = msdef.upgrade_state
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Invalid upgrade transition {current.value} -> {target.value} "
            f"for {msdef.spec_ref} version {msdef.version}"
        )

    ts = int(time.time()) if now is None else int(now)
    changes: dict[str, object] = {"upgrade_state": target}
    field_name = _TIMESTAMP_FIELDS[target]
    if not getattr(msdef, field_name):
        changes[field_name] = ts
    if target == UpgradeState.FAILED:
        changes["upgrade_failure_reason"] = reason
        changes["upgrade_failure_description"] = description or decode_reason_code(reason)
    return dataclasses.replace(msdef, **changes)


def needs_rollback(
    msdef: "MicroserviceDefinition",
    now_fn: Callable[[], float] = time.time,
    exec_timeout_s: int | None = None,
) -> bool:
    """True when an upgrade started but its containers never came up in time.

    Only the window before execution starts is timed; after that the
    execution monitor reports failures itself.
    """
    if msdef.upgrade_start_time == 0:
        return False
    if msdef.upgrade_execution_start_time != 0:
        return False
    timeout = settings.exec_timeout_s if exec_timeout_s is None else exec_timeout_s
    return int(now_fn()) - msdef.upgrade_start_time > timeout
