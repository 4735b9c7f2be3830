"""Voice/text intake contracts.

Every intake flow, audio or text, produces exactly one ``VoiceOutput``: a
union discriminated by ``intent``. Variants forbid extra keys, so a
``create`` payload that also carries ``action`` or ``rideId`` is rejected
instead of being read as a create.
"""
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from taxi_dispatch.core.errors import SchemaValidationError
from taxi_dispatch.models.dispatch import DocumentModel, MutationRequest, ResolutionOutcome, RideStatus


NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class VoiceIntent(str, Enum):
    CREATE = "create"
    MANAGE = "manage"
    UNKNOWN = "unknown"


class ManageAction(str, Enum):
    """Actions a manage intent can request."""

    ASSIGN = "assign"
    UPDATE_STATUS = "updateStatus"
    DELETE = "delete"
    CANCEL = "cancel"
    UNKNOWN = "unknown"


class _IntentModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class CreateRideIntent(_IntentModel):
    """A caller is describing a new ride request."""

    intent: Literal["create"] = "create"
    passenger_phone: NonEmptyStr
    pickup_location: NonEmptyStr
    dropoff_location: NonEmptyStr
    passenger_count: int = Field(ge=1)
    scheduled_time: Optional[datetime] = None
    moving_fee: bool = False
    reasoning: NonEmptyStr


class ManageRideIntent(_IntentModel):
    """A dispatcher command about an existing ride."""

    intent: Literal["manage"] = "manage"
    action: ManageAction
    ride_id: Optional[str] = None
    driver_id: Optional[str] = None
    new_status: Optional[RideStatus] = None
    reasoning: NonEmptyStr


class UnknownIntent(_IntentModel):
    intent: Literal["unknown"] = "unknown"
    reasoning: NonEmptyStr


VoiceOutput = Annotated[
    Union[CreateRideIntent, ManageRideIntent, UnknownIntent],
    Field(discriminator="intent"),
]

_voice_output_adapter: TypeAdapter = TypeAdapter(VoiceOutput)


def validate_voice_output(payload: Any) -> Union[CreateRideIntent, ManageRideIntent, UnknownIntent]:
    """Validate a raw model response (JSON text or decoded object) against the union."""
    try:
        if isinstance(payload, (str, bytes)):
            return _voice_output_adapter.validate_json(payload)
        return _voice_output_adapter.validate_python(payload)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()[:5]
        )
        raise SchemaValidationError(f"Voice output failed validation: {errors}") from exc


def voice_output_json_schema() -> str:
    return json.dumps(_voice_output_adapter.json_schema(by_alias=True), ensure_ascii=True)


class RideSnapshot(BaseModel):
    id: str
    status: str


class DriverSnapshot(BaseModel):
    id: str
    name: str


class VoiceInput(DocumentModel):
    """Everything the intake flow sends to the model."""

    audio_data_uri: Optional[str] = None
    text: Optional[str] = None
    rides: List[RideSnapshot] = Field(default_factory=list)
    drivers: List[DriverSnapshot] = Field(default_factory=list)


class VoiceCommandRequest(DocumentModel):
    """API payload; the rides/drivers snapshot is taken server-side."""

    audio_data_uri: Optional[str] = None
    text: Optional[str] = None


class VoiceCommandResult(DocumentModel):
    """What the dispatcher sees after a voice command ran end to end."""

    intent: VoiceIntent
    outcome: ResolutionOutcome
    message: str
    reasoning: str
    output: VoiceOutput
    mutations: List[MutationRequest] = Field(default_factory=list)
    ride: Optional[dict] = None
