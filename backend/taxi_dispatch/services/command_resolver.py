"""Policy checks that turn a parsed command into ride mutations."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from taxi_dispatch.core.errors import EntityNotFoundError, IncompleteCommandError, InvalidTransitionError
from taxi_dispatch.models.dispatch import (
    TERMINAL_RIDE_STATUSES,
    EntityType,
    MutationRequest,
    Resolution,
    ResolutionOutcome,
    RideStatus,
)
from taxi_dispatch.models.voice import ManageAction, ManageRideIntent


@dataclass
class DispatchSnapshot:
    """Rides and drivers keyed by id, as read at one point in time. May be stale by commit time."""

    rides: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    drivers: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_documents(
        cls,
        rides: Iterable[Dict[str, Any]],
        drivers: Iterable[Dict[str, Any]] = (),
    ) -> "DispatchSnapshot":
        return cls(
            rides={str(ride["id"]): ride for ride in rides},
            drivers={str(driver["id"]): driver for driver in drivers},
        )


def _normalize_status(status: Any) -> str:
    if isinstance(status, RideStatus):
        return status.value
    return str(status or "").strip().lower()


class VoiceCommandResolver:
    """Checks a manage command against a snapshot and emits the mutation it implies.

    The resolver owns policy only. It never writes, and it does not serialize
    concurrent calls: each mutation carries the version it validated against
    so the mutator can reject writes based on a stale read.
    """

    def resolve(self, intent: ManageRideIntent, snapshot: DispatchSnapshot) -> Resolution:
        reasoning = intent.reasoning
        action = intent.action
        if action == ManageAction.ASSIGN:
            return self.assign(intent.ride_id, intent.driver_id, snapshot, reasoning=reasoning)
        if action == ManageAction.UPDATE_STATUS:
            return self.change_status(intent.ride_id, intent.new_status, snapshot, reasoning=reasoning)
        if action in (ManageAction.DELETE, ManageAction.CANCEL):
            return self.cancel(intent.ride_id, snapshot, reasoning=reasoning)
        if action == ManageAction.UNKNOWN:
            return Resolution(
                outcome=ResolutionOutcome.INFORMATIONAL,
                message=reasoning,
                reasoning=reasoning,
            )
        raise ValueError(f"Unhandled manage action '{action}'")

    @staticmethod
    def _ride(snapshot: DispatchSnapshot, ride_id: Optional[str], action: str, reasoning: Optional[str]) -> Dict[str, Any]:
        normalized = (ride_id or "").strip()
        if not normalized:
            raise IncompleteCommandError(f"A ride id is required to {action}", reasoning=reasoning)
        ride = snapshot.rides.get(normalized)
        if ride is None:
            raise EntityNotFoundError("ride", normalized, reasoning=reasoning)
        return ride

    @staticmethod
    def _mutation(ride: Dict[str, Any], changes: Dict[str, Any]) -> MutationRequest:
        return MutationRequest(
            entity_type=EntityType.RIDE,
            id=str(ride["id"]),
            changes=changes,
            expected_version=int(ride.get("version") or 1),
        )

    def assign(
        self,
        ride_id: Optional[str],
        driver_id: Optional[str],
        snapshot: DispatchSnapshot,
        reasoning: Optional[str] = None,
    ) -> Resolution:
        ride = self._ride(snapshot, ride_id, "assign a driver", reasoning)
        normalized_driver = (driver_id or "").strip()
        if not normalized_driver:
            raise IncompleteCommandError("A driver id is required to assign a ride", reasoning=reasoning)
        if normalized_driver not in snapshot.drivers:
            raise EntityNotFoundError("driver", normalized_driver, reasoning=reasoning)

        current = _normalize_status(ride.get("status"))
        if current != RideStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Ride {ride['id']} is {current}; only pending rides can be assigned",
                reasoning=reasoning,
            )
        mutation = self._mutation(
            ride,
            {"status": RideStatus.ASSIGNED.value, "driverId": normalized_driver},
        )
        return Resolution(
            outcome=ResolutionOutcome.MUTATION,
            mutations=[mutation],
            message=f"Assign {ride['id']} to {normalized_driver}",
            reasoning=reasoning,
        )

    def change_status(
        self,
        ride_id: Optional[str],
        new_status: Optional[RideStatus | str],
        snapshot: DispatchSnapshot,
        reasoning: Optional[str] = None,
    ) -> Resolution:
        ride = self._ride(snapshot, ride_id, "update a status", reasoning)
        if new_status is None or not str(new_status).strip():
            raise IncompleteCommandError(f"A new status is required to update {ride['id']}", reasoning=reasoning)
        try:
            requested = RideStatus(_normalize_status(new_status)).value
        except ValueError as exc:
            raise IncompleteCommandError(f"Unsupported ride status '{new_status}'", reasoning=reasoning) from exc

        current = _normalize_status(ride.get("status"))
        if current in TERMINAL_RIDE_STATUSES:
            raise InvalidTransitionError(
                f"Ride {ride['id']} is {current}; {current} rides cannot change status",
                reasoning=reasoning,
            )
        if requested == current:
            return Resolution(
                outcome=ResolutionOutcome.NOOP,
                message=f"Ride {ride['id']} is already {current}",
                reasoning=reasoning,
            )
        return Resolution(
            outcome=ResolutionOutcome.MUTATION,
            mutations=[self._mutation(ride, {"status": requested})],
            message=f"Move {ride['id']} from {current} to {requested}",
            reasoning=reasoning,
        )

    def cancel(
        self,
        ride_id: Optional[str],
        snapshot: DispatchSnapshot,
        reasoning: Optional[str] = None,
    ) -> Resolution:
        ride = self._ride(snapshot, ride_id, "cancel a ride", reasoning)
        current = _normalize_status(ride.get("status"))
        if current == RideStatus.CANCELLED.value:
            return Resolution(
                outcome=ResolutionOutcome.NOOP,
                message=f"Ride {ride['id']} is already cancelled",
                reasoning=reasoning,
            )
        if current in TERMINAL_RIDE_STATUSES:
            raise InvalidTransitionError(
                f"Ride {ride['id']} is {current} and cannot be cancelled",
                reasoning=reasoning,
            )
        return Resolution(
            outcome=ResolutionOutcome.MUTATION,
            mutations=[self._mutation(ride, {"status": RideStatus.CANCELLED.value})],
            message=f"Cancel {ride['id']}",
            reasoning=reasoning,
        )

    def unassign(
        self,
        ride_id: Optional[str],
        snapshot: DispatchSnapshot,
        reasoning: Optional[str] = None,
    ) -> Resolution:
        """Send an assigned ride back to the waiting queue."""
        ride = self._ride(snapshot, ride_id, "unassign a driver", reasoning)
        current = _normalize_status(ride.get("status"))
        if current in TERMINAL_RIDE_STATUSES:
            raise InvalidTransitionError(
                f"Ride {ride['id']} is {current}; {current} rides cannot be unassigned",
                reasoning=reasoning,
            )
        if not ride.get("driverId"):
            return Resolution(
                outcome=ResolutionOutcome.NOOP,
                message=f"Ride {ride['id']} has no driver",
                reasoning=reasoning,
            )
        return Resolution(
            outcome=ResolutionOutcome.MUTATION,
            mutations=[
                self._mutation(
                    ride,
                    {"status": RideStatus.PENDING.value, "driverId": None, "assignedAt": None},
                )
            ],
            message=f"Unassign {ride['driverId']} from {ride['id']}",
            reasoning=reasoning,
        )

    def edit(
        self,
        ride_id: Optional[str],
        changes: Dict[str, Any],
        snapshot: DispatchSnapshot,
        reasoning: Optional[str] = None,
    ) -> Resolution:
        """Rewrite booking details on a ride that is still open."""
        ride = self._ride(snapshot, ride_id, "edit a ride", reasoning)
        if not changes:
            raise IncompleteCommandError(f"No fields given to edit on {ride['id']}", reasoning=reasoning)
        current = _normalize_status(ride.get("status"))
        if current in TERMINAL_RIDE_STATUSES:
            raise InvalidTransitionError(
                f"Ride {ride['id']} is {current}; {current} rides cannot be edited",
                reasoning=reasoning,
            )
        return Resolution(
            outcome=ResolutionOutcome.MUTATION,
            mutations=[self._mutation(ride, dict(changes))],
            message=f"Edit {', '.join(sorted(changes))} on {ride['id']}",
            reasoning=reasoning,
        )

    def set_fare(
        self,
        ride_id: Optional[str],
        total_fare: float,
        payment_details: Dict[str, Any],
        snapshot: DispatchSnapshot,
        reasoning: Optional[str] = None,
    ) -> Resolution:
        ride = self._ride(snapshot, ride_id, "set a fare", reasoning)
        current = _normalize_status(ride.get("status"))
        if current == RideStatus.CANCELLED.value:
            raise InvalidTransitionError(f"Ride {ride['id']} is cancelled; no fare can be set", reasoning=reasoning)
        return Resolution(
            outcome=ResolutionOutcome.MUTATION,
            mutations=[self._mutation(ride, {"totalFare": total_fare, "paymentDetails": payment_details})],
            message=f"Set fare on {ride['id']} to {total_fare:.2f}",
            reasoning=reasoning,
        )

    def unschedule(
        self,
        ride_id: Optional[str],
        snapshot: DispatchSnapshot,
        reasoning: Optional[str] = None,
    ) -> Resolution:
        """Turn a scheduled booking into an as-soon-as-possible one."""
        ride = self._ride(snapshot, ride_id, "unschedule a ride", reasoning)
        current = _normalize_status(ride.get("status"))
        if current in TERMINAL_RIDE_STATUSES:
            raise InvalidTransitionError(
                f"Ride {ride['id']} is {current}; {current} rides cannot be unscheduled",
                reasoning=reasoning,
            )
        if not ride.get("scheduledTime"):
            return Resolution(
                outcome=ResolutionOutcome.NOOP,
                message=f"Ride {ride['id']} is not scheduled",
                reasoning=reasoning,
            )
        return Resolution(
            outcome=ResolutionOutcome.MUTATION,
            mutations=[self._mutation(ride, {"scheduledTime": None})],
            message=f"Unschedule {ride['id']}",
            reasoning=reasoning,
        )
