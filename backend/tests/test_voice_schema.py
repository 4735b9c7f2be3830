"""Contract tests for the voice output union."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from taxi_dispatch.core.errors import SchemaValidationError  # noqa: E402
from taxi_dispatch.models.dispatch import RideStatus  # noqa: E402
from taxi_dispatch.models.voice import (  # noqa: E402
    CreateRideIntent,
    ManageAction,
    ManageRideIntent,
    UnknownIntent,
    validate_voice_output,
    voice_output_json_schema,
)


CREATE_PAYLOAD = {
    "intent": "create",
    "passengerPhone": "555-0100",
    "pickupLocation": "Central Station",
    "dropoffLocation": "Airport Terminal 2",
    "passengerCount": 2,
    "reasoning": "Caller asked for a pickup at the station for two people.",
}


def test_create_payload_validates_to_create_variant():
    output = validate_voice_output(CREATE_PAYLOAD)
    assert isinstance(output, CreateRideIntent)
    assert output.passenger_count == 2
    assert output.moving_fee is False
    assert output.scheduled_time is None


def test_manage_payload_from_json_text():
    raw = (
        '{"intent": "manage", "action": "updateStatus", "rideId": "ride-3", '
        '"newStatus": "in-progress", "reasoning": "Driver picked up the passenger."}'
    )
    output = validate_voice_output(raw)
    assert isinstance(output, ManageRideIntent)
    assert output.action == ManageAction.UPDATE_STATUS
    assert output.new_status == RideStatus.IN_PROGRESS
    assert output.driver_id is None


def test_unknown_payload_only_needs_reasoning():
    output = validate_voice_output({"intent": "unknown", "reasoning": "Audio was mostly static."})
    assert isinstance(output, UnknownIntent)


@pytest.mark.parametrize("extra_field", ["action", "rideId", "newStatus"])
def test_create_rejects_manage_fields(extra_field):
    payload = dict(CREATE_PAYLOAD)
    payload[extra_field] = "assign" if extra_field == "action" else "ride-1"
    with pytest.raises(SchemaValidationError):
        validate_voice_output(payload)


def test_closed_enumerations_do_not_default():
    with pytest.raises(SchemaValidationError):
        validate_voice_output({"intent": "manage", "action": "teleport", "rideId": "ride-1", "reasoning": "x"})
    with pytest.raises(SchemaValidationError):
        validate_voice_output(
            {"intent": "manage", "action": "updateStatus", "rideId": "ride-1", "newStatus": "flying", "reasoning": "x"}
        )


def test_reasoning_must_be_non_empty():
    with pytest.raises(SchemaValidationError):
        validate_voice_output({"intent": "unknown", "reasoning": "   "})
    payload = dict(CREATE_PAYLOAD)
    del payload["reasoning"]
    with pytest.raises(SchemaValidationError):
        validate_voice_output(payload)


def test_missing_or_unknown_intent_tag_is_rejected():
    with pytest.raises(SchemaValidationError):
        validate_voice_output({"reasoning": "no tag"})
    with pytest.raises(SchemaValidationError):
        validate_voice_output({"intent": "refund", "reasoning": "not a known intent"})


def test_passenger_count_must_be_positive():
    payload = dict(CREATE_PAYLOAD, passengerCount=0)
    with pytest.raises(SchemaValidationError):
        validate_voice_output(payload)


def test_invalid_json_text_is_a_schema_failure():
    with pytest.raises(SchemaValidationError):
        validate_voice_output("Sure! Here is the ride: pickup at 5pm")


def test_dumped_create_output_carries_no_manage_keys():
    output = validate_voice_output(CREATE_PAYLOAD)
    dumped = output.model_dump(mode="json", by_alias=True, exclude_none=True)
    assert dumped["intent"] == "create"
    assert not {"action", "rideId", "newStatus", "driverId"} & set(dumped)
    assert isinstance(validate_voice_output(dumped), CreateRideIntent)


def test_json_schema_lists_all_three_variants():
    schema = voice_output_json_schema()
    for title in ("CreateRideIntent", "ManageRideIntent", "UnknownIntent"):
        assert title in schema
