"""Durable application of validated dispatch mutations."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from taxi_dispatch.core.errors import ConflictError, PersistenceError
from taxi_dispatch.core.logging import logger
from taxi_dispatch.models.dispatch import RIDE_STATUS_TIMESTAMPS, EntityType, MutationRequest
from taxi_dispatch.services.dispatch_store import DispatchStore


ENTITY_COLLECTIONS = {
    EntityType.RIDE: "rides",
    EntityType.DRIVER: "drivers",
}


class DispatchMutator:
    """Writes one mutation request and its audit event in a single transaction.

    Business rules are the resolver's job; this class only guarantees that a
    request lands completely or not at all.
    """

    def __init__(self, store: DispatchStore) -> None:
        self.store = store

    @staticmethod
    def _with_bookkeeping(request: MutationRequest) -> Dict[str, Any]:
        changes = dict(request.changes)
        if request.entity_type == EntityType.RIDE and "status" in changes:
            stamp_field = RIDE_STATUS_TIMESTAMPS.get(str(changes["status"]))
            if stamp_field:
                changes.setdefault(stamp_field, datetime.now(timezone.utc).isoformat())
        return changes

    def apply(
        self,
        tenant_id: str,
        request: MutationRequest,
        actor: str,
        source: str = "dispatcher",
        reasoning: Optional[str] = None,
    ) -> Dict[str, Any]:
        collection = ENTITY_COLLECTIONS[request.entity_type]
        details: Dict[str, Any] = {"changes": request.changes, "source": source}
        if reasoning:
            details["reasoning"] = reasoning
        batch = (
            self.store.batch(tenant_id)
            .update(collection, request.id, self._with_bookkeeping(request), request.expected_version)
            .event(request.entity_type.value, request.id, f"{request.entity_type.value}_updated", actor, details)
        )
        try:
            document = self.store.commit(batch)[0]
        except ConflictError as exc:
            logger.warning("Mutation rejected on stale version", entity_id=request.id, error=exc.message)
            exc.reasoning = exc.reasoning or reasoning
            raise
        except KeyError as exc:
            raise PersistenceError(
                f"{request.entity_type.value.capitalize()} {request.id} no longer exists",
                reasoning=reasoning,
            ) from exc
        except sqlite3.Error as exc:
            logger.error("Mutation write failed", entity_id=request.id, error=str(exc))
            raise PersistenceError(f"Failed to persist {request.id}: {exc}", reasoning=reasoning) from exc

        logger.info(
            "Mutation applied",
            tenant_id=tenant_id,
            entity_type=request.entity_type.value,
            entity_id=request.id,
            fields=sorted(request.changes.keys()),
            version=document.get("version"),
            source=source,
        )
        return document

    def create(
        self,
        tenant_id: str,
        entity_type: EntityType,
        document: Dict[str, Any],
        actor: str,
        source: str = "dispatcher",
        reasoning: Optional[str] = None,
    ) -> Dict[str, Any]:
        collection = ENTITY_COLLECTIONS[entity_type]
        doc_id = str(document["id"])
        details: Dict[str, Any] = {"source": source}
        if reasoning:
            details["reasoning"] = reasoning
        batch = (
            self.store.batch(tenant_id)
            .set(collection, doc_id, document)
            .event(entity_type.value, doc_id, f"{entity_type.value}_created", actor, details)
        )
        try:
            return self.store.commit(batch)[0]
        except sqlite3.Error as exc:
            logger.error("Create write failed", entity_id=doc_id, error=str(exc))
            raise PersistenceError(f"Failed to persist {doc_id}: {exc}", reasoning=reasoning) from exc
