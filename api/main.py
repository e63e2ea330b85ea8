"""
FastAPI Application — operational surface for the gatekeeper.

Provides:
- Lifespan that starts and stops the GatekeeperRuntime (reconciler + fan-out)
- Health endpoint: Redis connectivity, last tick, subscription state
- Manual reconciliation trigger (respects the no-overlap rule)

Run:
    uvicorn api.main:app
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request

from core.runtime import GatekeeperRuntime

logger = structlog.get_logger()


def create_app(runtime: GatekeeperRuntime = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = app.state.runtime or GatekeeperRuntime()
        app.state.runtime = rt
        await rt.start()
        yield
        await rt.stop()

    app = FastAPI(
        title="Gatekeeper API",
        description="Token-gated membership reconciliation and sentiment alerts",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        rt: GatekeeperRuntime = request.app.state.runtime
        report = await rt.health()
        healthy = report["redis"]["commands"]
        return {
            "status": "healthy" if healthy else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **report,
        }

    # ══════════════════════════════════════════════════════════
    #  RECONCILIATION
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/reconcile/run")
    async def run_reconcile(request: Request):
        rt: GatekeeperRuntime = request.app.state.runtime
        result = await rt.reconciler.run_tick()
        logger.info("manual_reconcile_triggered", skipped=result.skipped)
        return result.to_dict()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
