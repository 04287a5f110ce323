# campaign_engine/web/metrics.py
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

# -------------------------------------------------------
#  FastAPI router for metrics endpoints
# -------------------------------------------------------

router = APIRouter()

@router.get("/metrics")
async def metrics_endpoint():
    """Prometheus scrape endpoint."""
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@router.get("/readyz")
async def readiness_check(request: Request):
    """Ready once the engine has run startup recovery and its workers are up."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or not runtime.ready:
        return JSONResponse(status_code=503, content={"status": "starting"})
    recovery = runtime.last_recovery.to_dict() if runtime.last_recovery else None
    return {"status": "ready", "recovery": recovery}
