"""Live ride/driver views pushed over WebSockets."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List

from fastapi import APIRouter, HTTPException, WebSocket, status

from taxi_dispatch.core.auth import get_websocket_tenant_context
from taxi_dispatch.core.logging import logger
from taxi_dispatch.services.dispatch_engine import dispatch_engine
from taxi_dispatch.services.dispatch_store import Subscription

router = APIRouter(prefix="/dispatch/live", tags=["live"])

SnapshotCallback = Callable[[List[Dict[str, Any]]], None]


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _stream(
    websocket: WebSocket,
    collection: str,
    subscribe: Callable[[str, SnapshotCallback], Subscription],
) -> None:
    try:
        context = get_websocket_tenant_context(websocket)
    except HTTPException as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc.detail))
        return
    await websocket.accept()

    loop = asyncio.get_running_loop()
    snapshots: asyncio.Queue = asyncio.Queue()

    def _on_snapshot(docs: List[Dict[str, Any]]) -> None:
        # Store listeners fire on whichever thread committed the write.
        loop.call_soon_threadsafe(snapshots.put_nowait, docs)

    subscription = await asyncio.to_thread(subscribe, context.tenant_id, _on_snapshot)
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        while True:
            next_snapshot = asyncio.create_task(snapshots.get())
            done, _ = await asyncio.wait({next_snapshot, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if disconnected in done:
                next_snapshot.cancel()
                break
            await websocket.send_json(
                {"collection": collection, "tenant_id": context.tenant_id, "items": next_snapshot.result()}
            )
    finally:
        disconnected.cancel()
        subscription.close()
        logger.info("Live view closed", tenant_id=context.tenant_id, collection=collection)


@router.websocket("/rides")
async def live_rides(websocket: WebSocket, active: bool = True):
    await _stream(
        websocket,
        "rides",
        lambda tenant_id, callback: dispatch_engine.subscribe_rides(tenant_id, callback, active_only=active),
    )


@router.websocket("/drivers")
async def live_drivers(websocket: WebSocket):
    await _stream(websocket, "drivers", dispatch_engine.subscribe_drivers)
