"""
Job API Routes - הוספה לתור, סטטוס, היסטוריה וביטול.
"""
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator

from app.domain.services.runtime import SyncRuntime, get_runtime

router = APIRouter()


class JobCreate(BaseModel):
    job_type: str = Field(min_length=1, max_length=50)
    payload: dict[str, Any] = Field(default_factory=dict)
    tenant_id: str | None = Field(default=None, max_length=64)
    priority: Literal["high", "normal", "low"] | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_retries: int | None = Field(default=None, ge=0, le=10)
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("job_type")
    @classmethod
    def normalize_job_type(cls, v: str) -> str:
        return v.strip()


class JobEnqueued(BaseModel):
    job_id: str
    status: str
    queue_position: int | None
    priority: str


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=JobEnqueued)
async def enqueue_job(body: JobCreate, runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.orchestrator.enqueue_job(
        body.job_type,
        body.payload,
        tenant_id=body.tenant_id,
        priority=body.priority,
        timeout_seconds=body.timeout_seconds,
        max_retries=body.max_retries,
        options=body.options,
    )


@router.get("")
async def job_history(
    tenant_id: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    job_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    runtime: SyncRuntime = Depends(get_runtime),
) -> list[dict[str, Any]]:
    return await runtime.orchestrator.get_job_history(
        tenant_id, status=status_filter, job_type=job_type, limit=limit
    )


@router.get("/types")
async def job_types(runtime: SyncRuntime = Depends(get_runtime)) -> list[str]:
    return runtime.orchestrator.job_types()


@router.get("/{job_id}")
async def job_status(job_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.orchestrator.get_job_status(job_id)


@router.get("/{job_id}/estimate")
async def job_estimate(job_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.orchestrator.estimate_completion(job_id)


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.orchestrator.cancel_job(job_id)
