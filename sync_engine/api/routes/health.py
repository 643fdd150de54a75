"""Health check route."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from sync_engine.api.deps import get_runtime
from sync_engine.runtime import Runtime

router = APIRouter(tags=["monitoring"])


@router.get("/health")
async def health(runtime: Runtime = Depends(get_runtime)):
    """Queue store reachability plus dispatcher and scheduler state."""
    queue = await runtime.queue.health_check()
    body = {"status": "healthy" if queue["healthy"] else "unhealthy", "queue": queue}
    return JSONResponse(body, status_code=200 if queue["healthy"] else 503)
