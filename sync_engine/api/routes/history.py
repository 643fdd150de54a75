"""Job History routes."""

from fastapi import APIRouter, Depends, Query

from sync_engine.api.deps import get_runtime, get_tenant_id
from sync_engine.runtime import Runtime

router = APIRouter(prefix="/api/history", tags=["history"])


@router.get("/{data_source_id}")
async def data_source_history(
    data_source_id: str,
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    runtime: Runtime = Depends(get_runtime),
):
    """Recent runs for a data source, newest first, with a summary."""
    runs = await runtime.history.list(tenant_id, data_source_id, limit)
    summary = await runtime.history.summary(tenant_id, data_source_id, limit)
    return {"summary": summary, "runs": runs}
