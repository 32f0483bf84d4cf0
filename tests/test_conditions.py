"""Tests for status condition helpers."""

from datetime import timedelta

from swarmplane.conditions import (
    DEGRADED,
    PROGRESSING,
    READY,
    clear_degraded,
    find_condition,
    is_true,
    mark_failed,
    mark_progressing,
    mark_ready,
    remove_condition,
    set_condition,
)


def test_transition_time_moves_only_on_flip(clock):
    conditions = []
    set_condition(conditions, READY, False, "Creating", "0/3", clock())
    first = clock()

    clock.advance(30)
    set_condition(conditions, READY, False, "Creating", "2/3", clock())
    ready = find_condition(conditions, READY)
    assert ready.last_transition_time == first
    assert ready.message == "2/3"

    clock.advance(30)
    set_condition(conditions, READY, True, "AllAgentsReady", "3/3", clock())
    assert find_condition(conditions, READY).last_transition_time == clock()
    assert len(conditions) == 1


def test_phase_helpers(clock):
    conditions = []
    mark_progressing(conditions, "Scaling", "3 -> 5", clock())
    assert is_true(conditions, PROGRESSING)
    assert not is_true(conditions, READY)

    mark_ready(conditions, "Running", "5/5", clock())
    assert is_true(conditions, READY)
    assert not is_true(conditions, PROGRESSING)

    mark_failed(conditions, "InvalidConfiguration", "min > max", clock())
    assert is_true(conditions, DEGRADED)
    assert not is_true(conditions, READY)


def test_clear_degraded_only_when_present(clock):
    conditions = []
    clear_degraded(conditions, clock())
    assert conditions == []

    set_condition(conditions, DEGRADED, True, "InsufficientAgents", "1/3", clock())
    clear_degraded(conditions, clock() + timedelta(seconds=5))
    assert find_condition(conditions, DEGRADED).reason == "AsExpected"
    assert not is_true(conditions, DEGRADED)

    remove_condition(conditions, DEGRADED)
    assert find_condition(conditions, DEGRADED) is None
