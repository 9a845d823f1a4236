"""
Event Bus API Routes - סטטיסטיקות, היסטוריה ו-dead letters.
"""
from typing import Any

from fastapi import APIRouter, Depends, Query

from app.domain.services.runtime import SyncRuntime, get_runtime

router = APIRouter()


@router.get("/stats")
async def event_stats(runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.event_bus.get_statistics()


@router.get("/history")
async def event_history(
    tenant_id: str | None = Query(default=None, max_length=64),
    event_type: str | None = Query(default=None, max_length=100),
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    items = await runtime.event_bus.get_event_history(
        tenant_id, event_type=event_type, status=status, limit=limit
    )
    return {"count": len(items), "items": items}


@router.get("/dead-letters")
async def dead_letters(
    limit: int = Query(default=50, ge=1, le=1000),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    items = runtime.event_bus.get_dead_letters(limit)
    return {"count": len(items), "items": items}


@router.post("/dead-letters/replay")
async def replay_dead_letters(
    limit: int | None = Query(default=None, ge=1, le=1000),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict[str, int]:
    replayed = await runtime.event_bus.replay_dead_letters(limit)
    return {"replayed": replayed}
