"""FastAPI dependencies."""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from sync_engine.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Runtime created by the application lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not started",
        )
    return runtime


async def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    """
    Tenant scope of the request.

    Authentication happens upstream; the gateway forwards the caller's tenant.
    """
    if not x_tenant_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-ID is empty")
    return x_tenant_id


async def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> Optional[str]:
    return x_user_id
