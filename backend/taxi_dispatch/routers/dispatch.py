"""API routes for rides, drivers, and the dispatch audit timeline."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from taxi_dispatch.core.auth import TenantContext, get_tenant_context, require_roles
from taxi_dispatch.core.errors import DispatchError, http_status_for
from taxi_dispatch.core.logging import logger
from taxi_dispatch.models.dispatch import (
    DriverCreateRequest,
    DriverLocationUpdate,
    RideAssignRequest,
    RideCreateRequest,
    RideFareRequest,
    RideStatusRequest,
    RideUpdateRequest,
    RideVersionRequest,
)
from taxi_dispatch.services.dispatch_engine import dispatch_engine
from taxi_dispatch.services.dispatch_store import dispatch_store

router = APIRouter(prefix="/dispatch", tags=["dispatch"])

DISPATCH_ROLES = ("dispatcher", "owner", "admin")


def _idempotency_lookup(context: TenantContext, operation: str, key: str | None):
    if not key:
        return None
    return dispatch_store.get_idempotent(context.tenant_id, f"{operation}:{key.strip()}")


def _idempotency_store(context: TenantContext, operation: str, key: str | None, response: dict):
    if not key:
        return
    dispatch_store.set_idempotent(context.tenant_id, f"{operation}:{key.strip()}", response)


def _http_error(exc: DispatchError, **fields) -> HTTPException:
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.error("Dispatch operation failed", error=exc.message, **fields)
    else:
        logger.warning("Dispatch operation rejected", error=exc.message, **fields)
    return HTTPException(status_code=status_code, detail=exc.to_detail())


@router.get("/rides")
def list_rides(
    active: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
):
    return {"items": dispatch_engine.list_rides(context.tenant_id, active_only=active), "tenant_id": context.tenant_id}


@router.post("/rides")
def create_ride(
    request: RideCreateRequest,
    context: TenantContext = Depends(require_roles(*DISPATCH_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(context, "create_ride", idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.create_ride(context.tenant_id, request, actor=context.actor)
    except DispatchError as exc:
        raise _http_error(exc)
    _idempotency_store(context, "create_ride", idempotency_key, response)
    return response


@router.get("/rides/{ride_id}")
def get_ride(ride_id: str, context: TenantContext = Depends(get_tenant_context)):
    try:
        return dispatch_engine.get_ride(context.tenant_id, ride_id)
    except DispatchError as exc:
        raise _http_error(exc, ride_id=ride_id)


@router.post("/rides/{ride_id}/assign")
def assign_driver(
    ride_id: str,
    request: RideAssignRequest,
    context: TenantContext = Depends(require_roles(*DISPATCH_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"assign:{ride_id}:{request.driver_id}"
    cached = _idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.assign_driver(context.tenant_id, ride_id, request, actor=context.actor)
    except DispatchError as exc:
        raise _http_error(exc, ride_id=ride_id, driver_id=request.driver_id)
    _idempotency_store(context, operation, idempotency_key, response)
    return response


@router.post("/rides/{ride_id}/unassign")
def unassign_driver(
    ride_id: str,
    request: Optional[RideVersionRequest] = None,
    context: TenantContext = Depends(require_roles(*DISPATCH_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"unassign:{ride_id}"
    cached = _idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.unassign_driver(
            context.tenant_id, ride_id, request or RideVersionRequest(), actor=context.actor
        )
    except DispatchError as exc:
        raise _http_error(exc, ride_id=ride_id)
    _idempotency_store(context, operation, idempotency_key, response)
    return response


@router.post("/rides/{ride_id}/status")
def change_status(
    ride_id: str,
    request: RideStatusRequest,
    context: TenantContext = Depends(require_roles("driver", *DISPATCH_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"status:{ride_id}:{request.status.value}"
    cached = _idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.change_status(context.tenant_id, ride_id, request, actor=context.actor)
    except DispatchError as exc:
        raise _http_error(exc, ride_id=ride_id, status=request.status.value)
    _idempotency_store(context, operation, idempotency_key, response)
    return response


@router.post("/rides/{ride_id}/cancel")
def cancel_ride(
    ride_id: str,
    request: Optional[RideVersionRequest] = None,
    context: TenantContext = Depends(require_roles(*DISPATCH_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"cancel:{ride_id}"
    cached = _idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.cancel_ride(
            context.tenant_id, ride_id, request or RideVersionRequest(), actor=context.actor
        )
    except DispatchError as exc:
        raise _http_error(exc, ride_id=ride_id)
    _idempotency_store(context, operation, idempotency_key, response)
    return response


@router.patch("/rides/{ride_id}")
def edit_ride(
    ride_id: str,
    request: RideUpdateRequest,
    context: TenantContext = Depends(require_roles(*DISPATCH_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"edit:{ride_id}"
    cached = _idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.edit_ride(context.tenant_id, ride_id, request, actor=context.actor)
    except DispatchError as exc:
        raise _http_error(exc, ride_id=ride_id)
    _idempotency_store(context, operation, idempotency_key, response)
    return response


@router.post("/rides/{ride_id}/fare")
def set_fare(
    ride_id: str,
    request: RideFareRequest,
    context: TenantContext = Depends(require_roles(*DISPATCH_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"fare:{ride_id}"
    cached = _idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.set_fare(context.tenant_id, ride_id, request, actor=context.actor)
    except DispatchError as exc:
        raise _http_error(exc, ride_id=ride_id, total_fare=request.total_fare)
    _idempotency_store(context, operation, idempotency_key, response)
    return response


@router.post("/rides/{ride_id}/unschedule")
def unschedule_ride(
    ride_id: str,
    request: Optional[RideVersionRequest] = None,
    context: TenantContext = Depends(require_roles(*DISPATCH_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"unschedule:{ride_id}"
    cached = _idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.unschedule_ride(
            context.tenant_id, ride_id, request or RideVersionRequest(), actor=context.actor
        )
    except DispatchError as exc:
        raise _http_error(exc, ride_id=ride_id)
    _idempotency_store(context, operation, idempotency_key, response)
    return response


@router.get("/drivers")
def list_drivers(context: TenantContext = Depends(get_tenant_context)):
    return {"items": dispatch_engine.list_drivers(context.tenant_id), "tenant_id": context.tenant_id}


@router.post("/drivers")
def create_driver(
    request: DriverCreateRequest,
    context: TenantContext = Depends(require_roles("owner", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(context, "create_driver", idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.create_driver(context.tenant_id, request, actor=context.actor)
    except DispatchError as exc:
        raise _http_error(exc)
    _idempotency_store(context, "create_driver", idempotency_key, response)
    return response


@router.put("/drivers/{driver_id}/location")
def update_driver_location(
    driver_id: str,
    request: DriverLocationUpdate,
    context: TenantContext = Depends(require_roles("driver", *DISPATCH_ROLES)),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"location:{driver_id}"
    cached = _idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        response = dispatch_engine.update_driver_location(context.tenant_id, driver_id, request, actor=context.actor)
    except DispatchError as exc:
        raise _http_error(exc, driver_id=driver_id)
    _idempotency_store(context, operation, idempotency_key, response)
    return response


@router.get("/timeline")
def get_timeline(
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    context: TenantContext = Depends(get_tenant_context),
):
    return {"events": dispatch_engine.timeline(context.tenant_id, entity_id=entity_id, limit=limit)}
