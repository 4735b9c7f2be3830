"""Error taxonomy for the dispatch pipeline.

Every error is terminal for the pipeline invocation that raised it. The
``reasoning`` attribute carries the model's justification text when the
failure happened while handling a parsed voice intent, so the caller can show
it next to the message.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class DispatchError(Exception):
    """Base class for dispatch pipeline failures."""

    code = "dispatch_error"

    def __init__(self, message: str, *, reasoning: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reasoning = reasoning

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": type(self).__name__, "code": self.code, "message": self.message}
        if self.reasoning:
            detail["reasoning"] = self.reasoning
        return detail


class SchemaValidationError(DispatchError):
    """Inference output does not match the voice output union."""

    code = "schema_validation"


class InferenceError(DispatchError):
    """Transport or provider failure calling the model, or unusable input audio."""

    code = "inference"


class EntityNotFoundError(DispatchError):
    """A referenced ride or driver id is absent from the current snapshot."""

    code = "entity_not_found"

    def __init__(self, entity_type: str, entity_id: str, *, reasoning: Optional[str] = None) -> None:
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found", reasoning=reasoning)
        self.entity_type = entity_type
        self.entity_id = entity_id


class IncompleteCommandError(DispatchError):
    """A command is missing an id or status it needs to be resolved."""

    code = "incomplete_command"


class InvalidTransitionError(DispatchError):
    """Requested status change leaves a terminal state or assigns a non-pending ride."""

    code = "invalid_transition"


class ConflictError(DispatchError):
    """Document version moved on since the snapshot the change was validated against."""

    code = "conflict"


class PersistenceError(DispatchError):
    """Backing-store write failed."""

    code = "persistence"


class ConfigurationError(DispatchError):
    """Credentials for an external service are missing."""

    code = "configuration"


class TransportError(DispatchError):
    """An external delivery service (e.g. SMTP) rejected or dropped the request."""

    code = "transport"


HTTP_STATUS_BY_ERROR = {
    EntityNotFoundError: 404,
    IncompleteCommandError: 422,
    InvalidTransitionError: 409,
    ConflictError: 409,
    SchemaValidationError: 502,
    InferenceError: 502,
    TransportError: 502,
    ConfigurationError: 503,
    PersistenceError: 503,
}


def http_status_for(exc: DispatchError) -> int:
    for error_type, status_code in HTTP_STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status_code
    return 400
