# campaign_engine/web/server.py
# ---------------------------------------------------------------------------
# Outreach engine web server: health, metrics, campaign and event intake
# ---------------------------------------------------------------------------
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI

from campaign_engine.common.tracing import setup_logging
from campaign_engine.config import Settings, get_settings
from campaign_engine.main import shutdown
from campaign_engine.runtime import EngineRuntime
from campaign_engine.web import metrics
from campaign_engine.web.idempotency import IdempotencyCache
from campaign_engine.web.middleware import setup_middleware
from campaign_engine.web.routes_campaigns import router as campaigns_router


# ---------------------------------------------------------------------------
# Application Factory
# ---------------------------------------------------------------------------
def create_app(runtime: Optional[EngineRuntime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the API around an engine runtime; the lifespan starts and stops it."""
    settings = settings or (runtime.settings if runtime else get_settings())
    runtime = runtime or EngineRuntime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        try:
            yield
        finally:
            await shutdown(runtime, settings.SHUTDOWN_TIMEOUT_SECONDS)

    app = FastAPI(title="Outreach Campaign Engine", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.idempotency = IdempotencyCache(
        ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS, maxsize=settings.IDEMPOTENCY_MAX_KEYS
    )

    setup_middleware(app)

    app.include_router(campaigns_router)
    app.include_router(metrics.router)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


if __name__ == "__main__":
    _settings = get_settings()
    setup_logging(_settings.LOG_LEVEL)
    uvicorn.run(create_app(settings=_settings), host="0.0.0.0", port=_settings.PORT)
