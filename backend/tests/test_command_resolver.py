"""Unit tests for voice command resolution policy."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from taxi_dispatch.core.errors import (  # noqa: E402
    EntityNotFoundError,
    IncompleteCommandError,
    InvalidTransitionError,
)
from taxi_dispatch.models.dispatch import EntityType, ResolutionOutcome, RideStatus  # noqa: E402
from taxi_dispatch.models.voice import ManageRideIntent  # noqa: E402
from taxi_dispatch.services.command_resolver import DispatchSnapshot, VoiceCommandResolver  # noqa: E402


resolver = VoiceCommandResolver()


def _snapshot(*rides, drivers=({"id": "driver-2", "name": "Alex"},)) -> DispatchSnapshot:
    return DispatchSnapshot.from_documents(rides, drivers)


def _ride(ride_id: str, status: str, **extra) -> dict:
    return {"id": ride_id, "status": status, "version": 3, **extra}


def _intent(**fields) -> ManageRideIntent:
    fields.setdefault("reasoning", "Dispatcher said so.")
    return ManageRideIntent(**fields)


def test_assign_pending_ride_sets_status_and_driver_only():
    snapshot = _snapshot(_ride("ride-1", "pending"))
    resolution = resolver.resolve(_intent(action="assign", ride_id="ride-1", driver_id="driver-2"), snapshot)

    assert resolution.outcome == ResolutionOutcome.MUTATION
    assert len(resolution.mutations) == 1
    mutation = resolution.mutations[0]
    assert mutation.entity_type == EntityType.RIDE
    assert mutation.id == "ride-1"
    assert mutation.changes == {"status": "assigned", "driverId": "driver-2"}
    assert mutation.expected_version == 3
    assert resolution.reasoning == "Dispatcher said so."


@pytest.mark.parametrize("status", ["assigned", "in-progress", "completed", "cancelled"])
def test_assign_non_pending_ride_is_invalid_transition(status):
    snapshot = _snapshot(_ride("ride-1", status))
    with pytest.raises(InvalidTransitionError):
        resolver.resolve(_intent(action="assign", ride_id="ride-1", driver_id="driver-2"), snapshot)


def test_assign_unknown_driver_is_not_found():
    snapshot = _snapshot(_ride("ride-1", "pending"))
    with pytest.raises(EntityNotFoundError) as exc_info:
        resolver.resolve(_intent(action="assign", ride_id="ride-1", driver_id="driver-9"), snapshot)
    assert exc_info.value.entity_type == "driver"
    assert exc_info.value.entity_id == "driver-9"


@pytest.mark.parametrize(
    "fields",
    [
        {"action": "assign", "ride_id": "ride-5", "driver_id": "driver-2"},
        {"action": "updateStatus", "ride_id": "ride-5", "new_status": "completed"},
        {"action": "cancel", "ride_id": "ride-5"},
        {"action": "delete", "ride_id": "ride-5"},
    ],
)
def test_unknown_ride_is_not_found_for_every_action(fields):
    snapshot = _snapshot(_ride("ride-1", "pending"))
    with pytest.raises(EntityNotFoundError) as exc_info:
        resolver.resolve(_intent(**fields), snapshot)
    assert exc_info.value.entity_id == "ride-5"
    assert "ride-5" in exc_info.value.message
    assert exc_info.value.reasoning == "Dispatcher said so."


@pytest.mark.parametrize("terminal", ["completed", "cancelled"])
@pytest.mark.parametrize("requested", [status.value for status in RideStatus])
def test_terminal_rides_cannot_change_status(terminal, requested):
    snapshot = _snapshot(_ride("ride-4", terminal))
    with pytest.raises(InvalidTransitionError):
        resolver.resolve(_intent(action="updateStatus", ride_id="ride-4", new_status=requested), snapshot)


def test_update_status_moves_active_ride():
    snapshot = _snapshot(_ride("ride-2", "assigned", driverId="driver-2"))
    resolution = resolver.resolve(
        _intent(action="updateStatus", ride_id="ride-2", new_status="in-progress"), snapshot
    )
    assert resolution.outcome == ResolutionOutcome.MUTATION
    assert resolution.mutations[0].changes == {"status": "in-progress"}


def test_update_status_to_current_status_is_noop():
    snapshot = _snapshot(_ride("ride-2", "assigned"))
    resolution = resolver.resolve(_intent(action="updateStatus", ride_id="ride-2", new_status="assigned"), snapshot)
    assert resolution.outcome == ResolutionOutcome.NOOP
    assert resolution.mutations == []


def test_cancel_active_ride_emits_cancel_mutation():
    snapshot = _snapshot(_ride("ride-3", "assigned", driverId="driver-2"))
    resolution = resolver.resolve(_intent(action="cancel", ride_id="ride-3"), snapshot)
    assert resolution.mutations[0].changes == {"status": "cancelled"}


def test_cancel_already_cancelled_ride_is_noop_every_time():
    snapshot = _snapshot(_ride("ride-3", "cancelled"))
    intent = _intent(action="cancel", ride_id="ride-3")
    first = resolver.resolve(intent, snapshot)
    second = resolver.resolve(intent, snapshot)
    for resolution in (first, second):
        assert resolution.outcome == ResolutionOutcome.NOOP
        assert resolution.mutations == []


def test_cancel_completed_ride_is_invalid_transition():
    snapshot = _snapshot(_ride("ride-3", "completed"))
    with pytest.raises(InvalidTransitionError):
        resolver.resolve(_intent(action="delete", ride_id="ride-3"), snapshot)


@pytest.mark.parametrize(
    "fields",
    [
        {"action": "assign", "driver_id": "driver-2"},
        {"action": "assign", "ride_id": "ride-1"},
        {"action": "updateStatus", "ride_id": "ride-1"},
        {"action": "cancel", "ride_id": "  "},
    ],
)
def test_missing_parameters_are_incomplete(fields):
    snapshot = _snapshot(_ride("ride-1", "pending"))
    with pytest.raises(IncompleteCommandError):
        resolver.resolve(_intent(**fields), snapshot)


def test_unknown_action_is_informational():
    snapshot = _snapshot(_ride("ride-1", "pending"))
    resolution = resolver.resolve(_intent(action="unknown", reasoning="Which ride did you mean?"), snapshot)
    assert resolution.outcome == ResolutionOutcome.INFORMATIONAL
    assert resolution.message == "Which ride did you mean?"
    assert resolution.mutations == []


def test_unassign_returns_ride_to_queue():
    snapshot = _snapshot(_ride("ride-6", "assigned", driverId="driver-2", assignedAt="2026-01-01T00:00:00+00:00"))
    resolution = resolver.unassign("ride-6", snapshot)
    assert resolution.mutations[0].changes == {"status": "pending", "driverId": None, "assignedAt": None}


def test_unassign_without_driver_is_noop():
    snapshot = _snapshot(_ride("ride-6", "pending"))
    assert resolver.unassign("ride-6", snapshot).outcome == ResolutionOutcome.NOOP


def test_edit_open_ride_carries_only_given_fields():
    snapshot = _snapshot(_ride("ride-1", "assigned", driverId="driver-2"))
    resolution = resolver.edit("ride-1", {"notes": "gate 4", "passengerCount": 3}, snapshot)

    assert resolution.outcome == ResolutionOutcome.MUTATION
    assert resolution.mutations[0].changes == {"notes": "gate 4", "passengerCount": 3}
    assert resolution.mutations[0].expected_version == 3


def test_edit_needs_fields_and_an_open_ride():
    with pytest.raises(IncompleteCommandError):
        resolver.edit("ride-1", {}, _snapshot(_ride("ride-1", "pending")))
    with pytest.raises(InvalidTransitionError):
        resolver.edit("ride-1", {"notes": "x"}, _snapshot(_ride("ride-1", "completed")))
    with pytest.raises(EntityNotFoundError):
        resolver.edit("ride-7", {"notes": "x"}, _snapshot(_ride("ride-1", "pending")))


@pytest.mark.parametrize("status", ["pending", "assigned", "in-progress", "completed"])
def test_set_fare_on_any_uncancelled_ride(status):
    snapshot = _snapshot(_ride("ride-1", status))
    resolution = resolver.set_fare("ride-1", 30.0, {"card": 25.0, "tip": 5.0}, snapshot)
    assert resolution.mutations[0].changes == {"totalFare": 30.0, "paymentDetails": {"card": 25.0, "tip": 5.0}}


def test_set_fare_on_cancelled_ride_is_invalid_transition():
    with pytest.raises(InvalidTransitionError):
        resolver.set_fare("ride-1", 10.0, {}, _snapshot(_ride("ride-1", "cancelled")))


def test_unschedule_clears_scheduled_time():
    snapshot = _snapshot(_ride("ride-1", "pending", scheduledTime="2026-11-02T08:30:00Z"))
    resolution = resolver.unschedule("ride-1", snapshot)
    assert resolution.outcome == ResolutionOutcome.MUTATION
    assert resolution.mutations[0].changes == {"scheduledTime": None}


def test_unschedule_unscheduled_ride_is_noop():
    resolution = resolver.unschedule("ride-1", _snapshot(_ride("ride-1", "pending", scheduledTime=None)))
    assert resolution.outcome == ResolutionOutcome.NOOP
    assert resolution.mutations == []


def test_unschedule_terminal_ride_is_invalid_transition():
    snapshot = _snapshot(_ride("ride-1", "completed", scheduledTime="2026-11-02T08:30:00Z"))
    with pytest.raises(InvalidTransitionError):
        resolver.unschedule("ride-1", snapshot)
