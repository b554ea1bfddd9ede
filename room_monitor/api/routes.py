from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from ..core.timeutil import now_utc
from ..domain.models import ActionLogEntry, Device, Page, SensorSample
from ..services.broadcaster import ConnectionRegistry
from ..services.commands import CommandCoordinator, RejectReason
from ..services.ingestion import IngestionRouter
from ..storage.sqlite_repo import SQLiteRepository, StorageError
from .schemas import ControlRequest, ControlResponse, Pagination

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependency getters ---
# main.py resolves these via app.dependency_overrides.
def get_repo() -> SQLiteRepository:  # overridden in main
    raise RuntimeError("Repo dependency not configured")

def get_registry() -> ConnectionRegistry:  # overridden in main
    raise RuntimeError("Registry dependency not configured")

def get_coordinator() -> CommandCoordinator:  # overridden in main
    raise RuntimeError("Coordinator dependency not configured")

def get_ingestion() -> IngestionRouter:  # overridden in main
    raise RuntimeError("Ingestion dependency not configured")


REJECT_STATUS = {
    RejectReason.UNKNOWN_DEVICE: 400,
    RejectReason.IN_FLIGHT: 409,
    RejectReason.BUS_UNAVAILABLE: 503,
}

MAX_PAGE_SIZE = 200


def _page_params(page: Optional[int], limit: Optional[int]) -> tuple[int, int]:
    page_num = max(page or 1, 1)
    page_size = min(max(limit or 20, 1), MAX_PAGE_SIZE)
    return page_num, page_size


def _pagination(p: Page) -> dict:
    return Pagination(
        current_page=p.page,
        total_pages=p.total_pages,
        total_records=p.total,
        page_size=p.page_size,
        has_prev=p.page > 1,
        has_next=p.page < p.total_pages,
    ).model_dump()


def _sample_dict(s: SensorSample) -> dict:
    return {
        "id": s.id,
        "temperature": s.temperature,
        "humidity": s.humidity,
        "illuminance": s.illuminance,
        "timestamp": s.ts_utc.isoformat(),
    }


def _action_dict(a: ActionLogEntry) -> dict:
    return {
        "id": a.id,
        "actor": a.actor,
        "device": a.device.value,
        "action": a.action,
        "timestamp": a.ts_utc.isoformat(),
    }


@router.post("/control", response_model=ControlResponse)
async def control(req: ControlRequest, coordinator: CommandCoordinator = Depends(get_coordinator)):
    result = await coordinator.issue_command(req.device, req.action == "on")
    body = ControlResponse(
        accepted=result.accepted,
        device=result.device,
        state=result.state,
        reason=result.reason.value if result.reason else None,
    )
    if result.accepted:
        return body
    return JSONResponse(status_code=REJECT_STATUS[result.reason], content=body.model_dump())


@router.get("/stream")
async def stream(registry: ConnectionRegistry = Depends(get_registry)):
    conn = await registry.attach()

    async def events():
        try:
            while True:
                event = await conn.next_event()
                if event is None:
                    return
                yield f"data: {json.dumps(event)}\n\n"
        finally:
            registry.detach(conn.id)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        # covers a client gone before the first chunk; detach is idempotent
        background=BackgroundTask(registry.detach, conn.id),
    )


@router.get("/sensors")
async def sensors(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    repo: SQLiteRepository = Depends(get_repo),
):
    try:
        if page is None and limit is None:
            latest = await repo.latest_sample()
            return {"data": _sample_dict(latest) if latest else None}

        page_num, page_size = _page_params(page, limit)
        p = await repo.query_samples(page_num, page_size)
    except StorageError:
        logger.exception("Sensor query failed")
        raise HTTPException(status_code=500, detail="Database error")
    return {"data": [_sample_dict(s) for s in p.rows], "pagination": _pagination(p)}


@router.get("/actions")
async def actions(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    repo: SQLiteRepository = Depends(get_repo),
):
    page_num, page_size = _page_params(page, limit)
    try:
        p = await repo.query_actions(page_num, page_size)
    except StorageError:
        logger.exception("Action log query failed")
        raise HTTPException(status_code=500, detail="Database error")
    return {"data": [_action_dict(a) for a in p.rows], "pagination": _pagination(p)}


@router.get("/devices")
async def devices(repo: SQLiteRepository = Depends(get_repo)):
    try:
        states = await repo.device_states()
    except StorageError:
        logger.exception("Device state query failed")
        states = {d: False for d in Device}
    return {"data": {d.value: 1 if on else 0 for d, on in states.items()}}


@router.get("/health")
async def health(
    registry: ConnectionRegistry = Depends(get_registry),
    ingestion: IngestionRouter = Depends(get_ingestion),
):
    return {
        "status": "ok",
        "timestamp": now_utc().isoformat(),
        "mqtt": "connected" if registry.link_connected else "disconnected",
        "viewers": len(registry),
        "ingest": ingestion.stats,
    }
