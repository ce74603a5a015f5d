from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from mailsync.config import settings
from mailsync.db.database import check_database_health
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.metrics import registry
from mailsync.api.dependencies import verify_api_key

router = APIRouter()


@router.get("/health", summary="Health Check")
async def health_check(request: Request):
    """Liveness, database connectivity and scheduler state."""
    database_ok = await check_database_health()
    services = getattr(request.app.state, "services", None)
    scheduler = services.scheduler if services else None
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "connected" if database_ok else "unavailable",
        "app_name": settings.app_name,
        "version": settings.app_version,
        "scheduler_running": bool(scheduler and scheduler.running),
        "timestamp": utc_now().isoformat(),
    }


@router.get("/metrics", response_class=PlainTextResponse, dependencies=[Depends(verify_api_key)])
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
