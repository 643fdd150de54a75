"""Alert suppression routes."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from sync_engine.api.deps import get_runtime, get_tenant_id, get_user_id
from sync_engine.errors import AlertStateError, NotFoundError
from sync_engine.runtime import Runtime

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


class SuppressRequest(BaseModel):
    reason: Optional[str] = None
    until: Optional[datetime] = None


class UnsuppressRequest(BaseModel):
    reason: Optional[str] = None


class AlertResponse(BaseModel):
    id: str
    alert_type: str
    entity_id: Optional[str] = None
    severity: str
    status: str
    suppressed_by: Optional[str] = None
    suppressed_at: Optional[datetime] = None
    suppression_reason: Optional[str] = None
    suppressed_until: Optional[datetime] = None


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _raise_http(e: Exception):
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/{alert_id}/suppress", response_model=AlertResponse)
async def suppress_alert(
    alert_id: str,
    body: SuppressRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        alert = await runtime.alert_manager.suppress(alert_id, tenant_id, user_id, body.reason, _naive_utc(body.until))
    except (NotFoundError, AlertStateError) as e:
        _raise_http(e)
    return AlertResponse(**alert)


@router.post("/{alert_id}/unsuppress", response_model=AlertResponse)
async def unsuppress_alert(
    alert_id: str,
    body: UnsuppressRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        alert = await runtime.alert_manager.unsuppress(alert_id, tenant_id, user_id, body.reason)
    except (NotFoundError, AlertStateError) as e:
        _raise_http(e)
    return AlertResponse(**alert)
