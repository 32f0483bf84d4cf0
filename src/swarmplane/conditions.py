"""
Status condition helpers.

A condition's ``last_transition_time`` only moves when its boolean status
flips, so re-recording the same observation leaves the status unchanged.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from swarmplane.models import Condition

READY = "Ready"
PROGRESSING = "Progressing"
DEGRADED = "Degraded"
CAPACITY_AVAILABLE = "CapacityAvailable"


def find_condition(conditions: list[Condition], type_: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == type_:
            return condition
    return None


def set_condition(
    conditions: list[Condition],
    type_: str,
    status: bool,
    reason: str,
    message: str,
    now: datetime,
) -> None:
    existing = find_condition(conditions, type_)
    if existing is None:
        conditions.append(Condition(
            type=type_, status=status, reason=reason, message=message,
            last_transition_time=now,
        ))
        return
    if existing.status != status:
        existing.status = status
        existing.last_transition_time = now
    existing.reason = reason
    existing.message = message


def remove_condition(conditions: list[Condition], type_: str) -> None:
    conditions[:] = [c for c in conditions if c.type != type_]


def is_true(conditions: list[Condition], type_: str) -> bool:
    condition = find_condition(conditions, type_)
    return condition is not None and condition.status


def mark_ready(conditions: list[Condition], reason: str, message: str, now: datetime) -> None:
    set_condition(conditions, READY, True, reason, message, now)
    set_condition(conditions, PROGRESSING, False, reason, message, now)


def mark_progressing(conditions: list[Condition], reason: str, message: str, now: datetime) -> None:
    set_condition(conditions, PROGRESSING, True, reason, message, now)
    set_condition(conditions, READY, False, reason, message, now)


def mark_failed(conditions: list[Condition], reason: str, message: str, now: datetime) -> None:
    set_condition(conditions, READY, False, reason, message, now)
    set_condition(conditions, PROGRESSING, False, reason, message, now)
    set_condition(conditions, DEGRADED, True, reason, message, now)


def mark_degraded(conditions: list[Condition], reason: str, message: str, now: datetime) -> None:
    set_condition(conditions, DEGRADED, True, reason, message, now)


def clear_degraded(conditions: list[Condition], now: datetime) -> None:
    if find_condition(conditions, DEGRADED) is not None:
        set_condition(conditions, DEGRADED, False, "AsExpected", "", now)
