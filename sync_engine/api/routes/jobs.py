"""Job queue routes."""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from sync_engine.api.deps import get_runtime, get_tenant_id
from sync_engine.errors import NotFoundError
from sync_engine.integrations.config import get_integration
from sync_engine.queue.models import Job
from sync_engine.runtime import Runtime

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class JobCreate(BaseModel):
    integration_type: str
    entity_type: str
    data_source_id: Optional[str] = None
    priority: Optional[int] = Field(None, ge=0, le=100)
    metadata: dict[str, Any] = Field(default_factory=dict)


class JobStatusResponse(BaseModel):
    id: str
    status: str
    attempt: int
    max_attempts: int
    error: Optional[str] = None
    sync_id: Optional[str] = None
    batch_number: int
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@router.get("/stats")
async def job_stats(runtime: Runtime = Depends(get_runtime)):
    """Counts per status plus worker pool capacity."""
    return await runtime.queue.get_stats()


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        job = await runtime.queue.get_job(job_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobStatusResponse(
        id=job.id,
        status=job.status.value,
        attempt=job.attempt,
        max_attempts=job.max_attempts,
        error=job.error,
        sync_id=job.sync_id,
        batch_number=job.batch_number,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    body: JobCreate,
    tenant_id: str = Depends(get_tenant_id),
    runtime: Runtime = Depends(get_runtime),
):
    """Queue an ad hoc sync for one entity type."""
    integration = get_integration(body.integration_type)
    if integration is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown integration")
    type_config = integration.entity_config(body.entity_type)
    if type_config is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{body.integration_type} does not support {body.entity_type}",
        )

    job = Job(
        tenant_id=tenant_id,
        integration_type=body.integration_type,
        entity_type=body.entity_type,
        data_source_id=body.data_source_id,
        priority=body.priority if body.priority is not None else type_config.priority,
        metadata=body.metadata,
        max_attempts=runtime.settings.queue_max_attempts,
    )
    job_id = await runtime.queue.schedule(job)
    return {"id": job_id, "sync_id": job.sync_id, "status": job.status.value}
