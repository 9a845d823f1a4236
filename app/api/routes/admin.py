"""
Admin Endpoints - ניטור של כל הרכיבים בלי גישה ישירה ל-DB.

1. סטטיסטיקות מאוחדות (jobs, events, tokens, client, מחירים, webhooks)
2. מצב הטוקנים לפי tenant
3. circuit breakers + איפוס ידני
4. webhooks: סטטיסטיקות ו-retry ידני
"""
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from app.core.circuit_breaker import CircuitBreaker
from app.core.logging import get_logger
from app.domain.services.runtime import SyncRuntime, get_runtime

logger = get_logger(__name__)

router = APIRouter()


class CircuitBreakerStatusResponse(BaseModel):
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    success_count: int
    half_open_calls: int
    retry_after_seconds: float


@router.get("/stats")
async def admin_stats(runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    stats = runtime.get_statistics()
    stats["webhook_records"] = await runtime.webhooks.get_webhook_stats()
    stats["circuit_breakers"] = [cb.snapshot() for cb in CircuitBreaker.all_instances()]
    return stats


@router.get("/tokens")
async def admin_tokens(runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    tokens = await runtime.tokens.get_tokens_status()
    return {"count": len(tokens), "tokens": tokens, "stats": runtime.tokens.get_stats()}


@router.post("/tokens/{tenant_id}/revoke")
async def revoke_token(tenant_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    revoked = await runtime.tokens.revoke_token(tenant_id)
    if not revoked:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="אין טוקן ל-tenant הזה")
    logger.info("Token revoked by admin", extra_data={"tenant_id": tenant_id})
    return {"tenant_id": tenant_id, "revoked": True}


@router.get("/circuit-breakers", response_model=list[CircuitBreakerStatusResponse])
async def circuit_breakers() -> list[dict[str, Any]]:
    return [cb.snapshot() for cb in CircuitBreaker.all_instances()]


@router.post("/circuit-breakers/{service}/reset", response_model=CircuitBreakerStatusResponse)
async def reset_circuit_breaker(service: str) -> dict[str, Any]:
    breaker = next((cb for cb in CircuitBreaker.all_instances() if cb.service_name == service), None)
    if breaker is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"circuit breaker '{service}' לא קיים")
    breaker.reset()
    logger.warning("Circuit breaker reset by admin", extra_data={"service": service})
    return breaker.snapshot()


@router.get("/webhooks/stats")
async def webhook_stats(
    days: int = Query(default=7, ge=1, le=90),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    return await runtime.webhooks.get_webhook_stats(days)


@router.post("/webhooks/retry")
async def retry_webhooks(
    limit: int | None = Query(default=None, ge=1, le=500),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict[str, int]:
    return await runtime.webhooks.retry_failed_webhooks(limit)
