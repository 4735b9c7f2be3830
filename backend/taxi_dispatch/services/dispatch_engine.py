"""Dispatch orchestration: voice pipeline plus the dispatcher's direct actions."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from taxi_dispatch.core.config import get_settings
from taxi_dispatch.core.errors import EntityNotFoundError
from taxi_dispatch.core.logging import logger
from taxi_dispatch.models.dispatch import (
    Driver,
    DriverCreateRequest,
    DriverLocationUpdate,
    EntityType,
    InvitationRequest,
    Location,
    MutationRequest,
    Resolution,
    ResolutionOutcome,
    Ride,
    RideAssignRequest,
    RideCreateRequest,
    RideFareRequest,
    RideStatus,
    RideStatusRequest,
    RideUpdateRequest,
    RideVersionRequest,
)
from taxi_dispatch.models.voice import (
    CreateRideIntent,
    DriverSnapshot,
    ManageRideIntent,
    RideSnapshot,
    UnknownIntent,
    VoiceCommandRequest,
    VoiceCommandResult,
    VoiceInput,
    VoiceIntent,
    VoiceOutput,
)
from taxi_dispatch.services.command_resolver import DispatchSnapshot, VoiceCommandResolver
from taxi_dispatch.services.dispatch_mutator import DispatchMutator
from taxi_dispatch.services.dispatch_store import DispatchStore, Subscription, dispatch_store, status_in
from taxi_dispatch.services.mailer import Mailer, invitation_html, mailer
from taxi_dispatch.services.voice_intake import VoiceIntake, ensure_voice_output


class DispatchEngine:
    """Business orchestration for rides and drivers.

    Voice commands run intake -> resolve -> mutate as a strict sequence; the
    only suspension points are the model call and the store write.
    """

    def __init__(
        self,
        store: Optional[DispatchStore] = None,
        resolver: Optional[VoiceCommandResolver] = None,
        mail: Optional[Mailer] = None,
    ) -> None:
        self.settings = get_settings()
        self.store = store or dispatch_store
        self.resolver = resolver or VoiceCommandResolver()
        self.mutator = DispatchMutator(self.store)
        self.mailer = mail or mailer

    # Reads

    def snapshot(self, tenant_id: str) -> DispatchSnapshot:
        return DispatchSnapshot.from_documents(
            self.store.list(tenant_id, "rides"),
            self.store.list(tenant_id, "drivers"),
        )

    def _ride_snapshot(self, tenant_id: str, ride_id: str) -> DispatchSnapshot:
        ride = self.get_ride(tenant_id, ride_id)
        return DispatchSnapshot.from_documents([ride], self.store.list(tenant_id, "drivers"))

    def get_ride(self, tenant_id: str, ride_id: str) -> Dict[str, Any]:
        ride = self.store.get(tenant_id, "rides", ride_id)
        if ride is None:
            raise EntityNotFoundError("ride", ride_id)
        return ride

    def list_rides(self, tenant_id: str, active_only: bool = False) -> List[Dict[str, Any]]:
        predicate = status_in(*self.settings.live_status_set()) if active_only else None
        return self.store.list(tenant_id, "rides", predicate)

    def list_drivers(self, tenant_id: str) -> List[Dict[str, Any]]:
        return self.store.list(tenant_id, "drivers")

    def timeline(self, tenant_id: str, entity_id: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
        return self.store.list_timeline(tenant_id, entity_id=entity_id, limit=limit)

    def subscribe_rides(
        self,
        tenant_id: str,
        callback: Callable[[List[Dict[str, Any]]], None],
        active_only: bool = True,
    ) -> Subscription:
        predicate = status_in(*self.settings.live_status_set()) if active_only else None
        return self.store.subscribe(tenant_id, "rides", callback, predicate)

    def subscribe_drivers(self, tenant_id: str, callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
        return self.store.subscribe(tenant_id, "drivers", callback)

    # Writes

    def _apply(
        self,
        tenant_id: str,
        resolution: Resolution,
        actor: str,
        source: str,
        expected_version: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        written: List[Dict[str, Any]] = []
        for mutation in resolution.mutations:
            if expected_version is not None:
                mutation = mutation.model_copy(update={"expected_version": expected_version})
            written.append(
                self.mutator.apply(tenant_id, mutation, actor, source=source, reasoning=resolution.reasoning)
            )
        return written

    def _ride_after(self, tenant_id: str, ride_id: str, written: List[Dict[str, Any]]) -> Dict[str, Any]:
        return written[-1] if written else self.get_ride(tenant_id, ride_id)

    def create_ride(
        self,
        tenant_id: str,
        request: RideCreateRequest,
        actor: str,
        source: str = "dispatcher",
        reasoning: Optional[str] = None,
    ) -> Dict[str, Any]:
        ride = Ride(
            id=self.store.generate_id(tenant_id, "ride"),
            status=RideStatus.PENDING,
            driver_id=None,
            **request.model_dump(),
        )
        return self.mutator.create(tenant_id, EntityType.RIDE, ride.to_document(), actor, source=source, reasoning=reasoning)

    def assign_driver(self, tenant_id: str, ride_id: str, request: RideAssignRequest, actor: str) -> Dict[str, Any]:
        resolution = self.resolver.assign(ride_id, request.driver_id, self._ride_snapshot(tenant_id, ride_id))
        written = self._apply(tenant_id, resolution, actor, "dispatcher", request.expected_version)
        return self._ride_after(tenant_id, ride_id, written)

    def unassign_driver(self, tenant_id: str, ride_id: str, request: RideVersionRequest, actor: str) -> Dict[str, Any]:
        resolution = self.resolver.unassign(ride_id, self._ride_snapshot(tenant_id, ride_id))
        written = self._apply(tenant_id, resolution, actor, "dispatcher", request.expected_version)
        return self._ride_after(tenant_id, ride_id, written)

    def change_status(self, tenant_id: str, ride_id: str, request: RideStatusRequest, actor: str) -> Dict[str, Any]:
        resolution = self.resolver.change_status(ride_id, request.status, self._ride_snapshot(tenant_id, ride_id))
        written = self._apply(tenant_id, resolution, actor, "dispatcher", request.expected_version)
        return self._ride_after(tenant_id, ride_id, written)

    def cancel_ride(self, tenant_id: str, ride_id: str, request: RideVersionRequest, actor: str) -> Dict[str, Any]:
        resolution = self.resolver.cancel(ride_id, self._ride_snapshot(tenant_id, ride_id))
        written = self._apply(tenant_id, resolution, actor, "dispatcher", request.expected_version)
        return self._ride_after(tenant_id, ride_id, written)

    def edit_ride(self, tenant_id: str, ride_id: str, request: RideUpdateRequest, actor: str) -> Dict[str, Any]:
        changes = request.model_dump(mode="json", by_alias=True, exclude_unset=True, exclude={"expected_version"})
        resolution = self.resolver.edit(ride_id, changes, self._ride_snapshot(tenant_id, ride_id))
        written = self._apply(tenant_id, resolution, actor, "dispatcher", request.expected_version)
        return self._ride_after(tenant_id, ride_id, written)

    def set_fare(self, tenant_id: str, ride_id: str, request: RideFareRequest, actor: str) -> Dict[str, Any]:
        resolution = self.resolver.set_fare(
            ride_id,
            request.total_fare,
            request.payment_details.model_dump(mode="json", exclude_none=True),
            self._ride_snapshot(tenant_id, ride_id),
        )
        written = self._apply(tenant_id, resolution, actor, "dispatcher", request.expected_version)
        return self._ride_after(tenant_id, ride_id, written)

    def unschedule_ride(self, tenant_id: str, ride_id: str, request: RideVersionRequest, actor: str) -> Dict[str, Any]:
        resolution = self.resolver.unschedule(ride_id, self._ride_snapshot(tenant_id, ride_id))
        written = self._apply(tenant_id, resolution, actor, "dispatcher", request.expected_version)
        return self._ride_after(tenant_id, ride_id, written)

    def create_driver(self, tenant_id: str, request: DriverCreateRequest, actor: str) -> Dict[str, Any]:
        driver = Driver(id=self.store.generate_id(tenant_id, "driver"), **request.model_dump())
        return self.mutator.create(tenant_id, EntityType.DRIVER, driver.to_document(), actor)

    def update_driver_location(
        self,
        tenant_id: str,
        driver_id: str,
        request: DriverLocationUpdate,
        actor: str,
    ) -> Dict[str, Any]:
        if self.store.get(tenant_id, "drivers", driver_id) is None:
            raise EntityNotFoundError("driver", driver_id)
        changes: Dict[str, Any] = {"location": {"x": request.x, "y": request.y}}
        if request.status is not None:
            changes["status"] = request.status.value
        mutation = MutationRequest(entity_type=EntityType.DRIVER, id=driver_id, changes=changes)
        return self.mutator.apply(tenant_id, mutation, actor, source="driver_app")

    async def invite_user(self, tenant_id: str, request: InvitationRequest, actor: str) -> Dict[str, Any]:
        html = invitation_html(request.display_name or "", request.role, tenant_id)
        await asyncio.to_thread(self.mailer.send_mail, request.email, "You're invited to the dispatch team", html)
        user_id = request.email.strip().lower()
        document = {
            "email": user_id,
            "displayName": request.display_name,
            "role": request.role,
            "status": "invited",
            "invitedBy": actor,
        }
        return await asyncio.to_thread(self.store.put, tenant_id, "users", user_id, document)

    # Voice pipeline

    def voice_input(self, snapshot: DispatchSnapshot, request: VoiceCommandRequest) -> VoiceInput:
        return VoiceInput(
            audio_data_uri=request.audio_data_uri,
            text=request.text,
            rides=[RideSnapshot(id=ride_id, status=str(ride.get("status"))) for ride_id, ride in snapshot.rides.items()],
            drivers=[
                DriverSnapshot(id=driver_id, name=str(driver.get("name") or driver_id))
                for driver_id, driver in snapshot.drivers.items()
            ],
        )

    async def parse_voice(self, tenant_id: str, request: VoiceCommandRequest, intake: VoiceIntake) -> VoiceOutput:
        """Intake only: classify the input without touching dispatch state."""
        snapshot = await asyncio.to_thread(self.snapshot, tenant_id)
        return ensure_voice_output(await intake.infer(self.voice_input(snapshot, request)))

    async def process_voice_command(
        self,
        tenant_id: str,
        request: VoiceCommandRequest,
        actor: str,
        intake: VoiceIntake,
    ) -> VoiceCommandResult:
        snapshot = await asyncio.to_thread(self.snapshot, tenant_id)
        output = ensure_voice_output(await intake.infer(self.voice_input(snapshot, request)))

        if isinstance(output, CreateRideIntent):
            ride_request = RideCreateRequest(
                pickup=Location(name=output.pickup_location),
                dropoff=Location(name=output.dropoff_location),
                passenger_phone=output.passenger_phone,
                passenger_count=output.passenger_count,
                scheduled_time=output.scheduled_time,
                moving_fee=output.moving_fee,
            )
            ride = await asyncio.to_thread(
                self.create_ride, tenant_id, ride_request, actor, "voice", output.reasoning
            )
            result = VoiceCommandResult(
                intent=VoiceIntent.CREATE,
                outcome=ResolutionOutcome.MUTATION,
                message=f"Logged {ride['id']}",
                reasoning=output.reasoning,
                output=output,
                ride=ride,
            )
        elif isinstance(output, ManageRideIntent):
            resolution = self.resolver.resolve(output, snapshot)
            written = await asyncio.to_thread(self._apply, tenant_id, resolution, actor, "voice")
            ride = written[-1] if written else snapshot.rides.get((output.ride_id or "").strip())
            result = VoiceCommandResult(
                intent=VoiceIntent.MANAGE,
                outcome=resolution.outcome,
                message=resolution.message,
                reasoning=output.reasoning,
                output=output,
                mutations=resolution.mutations,
                ride=ride,
            )
        elif isinstance(output, UnknownIntent):
            result = VoiceCommandResult(
                intent=VoiceIntent.UNKNOWN,
                outcome=ResolutionOutcome.INFORMATIONAL,
                message=output.reasoning,
                reasoning=output.reasoning,
                output=output,
            )
        else:
            raise TypeError(f"Unhandled voice output {type(output).__name__}")

        logger.info(
            "Voice command processed",
            tenant_id=tenant_id,
            intent=result.intent.value,
            outcome=result.outcome.value,
            mutations=len(result.mutations),
        )
        return result


dispatch_engine = DispatchEngine()
