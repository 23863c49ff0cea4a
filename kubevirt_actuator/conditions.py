from datetime import UTC, datetime

from kubevirt_actuator.schemas import Condition


FAILURE = "Failure"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

MACHINE_CREATION_FAILED = "MachineCreationFailed"
MACHINE_CREATION_SUCCEEDED = "MachineCreationSucceeded"


def condition_failed(message: str) -> Condition:
    return Condition(
        type=FAILURE,
        status=CONDITION_TRUE,
        reason=MACHINE_CREATION_FAILED,
        message=message,
    )


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(
    conditions: list[Condition], condition: Condition, now: datetime | None = None
) -> list[Condition]:
    """Insert or update ``condition`` in place, keyed by type.

    ``last_probe_time`` is refreshed on every call; ``last_transition_time``
    only moves when the status flips.
    """
    now = now or datetime.now(UTC)
    existing = find_condition(conditions, condition.type)
    if existing is None:
        conditions.append(
            condition.model_copy(
                update={"last_probe_time": now, "last_transition_time": now}
            )
        )
        return conditions

    if existing.status != condition.status or existing.last_transition_time is None:
        existing.last_transition_time = now
    existing.status = condition.status
    existing.reason = condition.reason
    existing.message = condition.message
    existing.last_probe_time = now
    return conditions


def clear_failure(conditions: list[Condition], now: datetime | None = None) -> list[Condition]:
    if find_condition(conditions, FAILURE) is None:
        return conditions
    return set_condition(
        conditions,
        Condition(
            type=FAILURE,
            status=CONDITION_FALSE,
            reason=MACHINE_CREATION_SUCCEEDED,
        ),
        now,
    )
