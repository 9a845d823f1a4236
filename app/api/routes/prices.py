"""
Price API Routes - סנכרון מחירים יזום, עריכה ידנית, קונפליקטים והיסטוריה.
"""
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.domain.services.runtime import SyncRuntime, get_runtime

router = APIRouter()


class ProductPriceSync(BaseModel):
    force: bool = False


class ManualPriceChange(BaseModel):
    new_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    changed_by: str | None = Field(default=None, max_length=100)


class ConflictResolution(BaseModel):
    action: str = Field(max_length=20)
    price: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    resolved_by: str | None = Field(default=None, max_length=100)
    reason: str | None = Field(default=None, max_length=500)


@router.get("/stats")
async def price_stats(runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.price_engine.get_statistics()


@router.post("/sync")
async def sync_all_prices(runtime: SyncRuntime = Depends(get_runtime)):
    summary = await runtime.price_engine.sync_all_tenant_prices()
    if summary is None:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"status": "already_running"},
        )
    return {"status": "completed", "summary": summary}


@router.get("/conflicts")
async def price_conflicts(
    tenant_id: str | None = Query(default=None, max_length=64),
    status_filter: str | None = Query(default="pending", alias="status"),
    product_id: int | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    items = await runtime.price_engine.list_price_conflicts(
        tenant_id, status=status_filter or None, product_id=product_id, limit=limit
    )
    return {"count": len(items), "items": items}


@router.post("/conflicts/{conflict_id}/resolve")
async def resolve_price_conflict(
    conflict_id: int,
    body: ConflictResolution,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    return await runtime.price_engine.resolve_price_conflict(
        conflict_id, body.action, price=body.price, resolved_by=body.resolved_by, reason=body.reason
    )


@router.post("/sync/{tenant_id}")
async def sync_tenant_prices(tenant_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.price_engine.sync_tenant_prices(tenant_id)


@router.post("/{tenant_id}/{product_id}/sync")
async def sync_product_price(
    tenant_id: str,
    product_id: int,
    body: ProductPriceSync | None = None,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    result = await runtime.price_engine.sync_product_price(
        tenant_id, product_id, force=body.force if body else False
    )
    return result.to_dict()


@router.post("/{tenant_id}/{product_id}/manual")
async def manual_price_change(
    tenant_id: str,
    product_id: int,
    body: ManualPriceChange,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    return await runtime.price_engine.record_manual_price_change(
        tenant_id, product_id, body.new_price, changed_by=body.changed_by
    )


@router.get("/{tenant_id}/{product_id}/history")
async def price_history(
    tenant_id: str,
    product_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    runtime: SyncRuntime = Depends(get_runtime),
) -> list[dict[str, Any]]:
    return await runtime.price_engine.get_price_history(tenant_id, product_id, limit)
