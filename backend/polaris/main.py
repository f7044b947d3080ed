from __future__ import annotations

from fastapi import FastAPI

from .routes.metrics import router as metrics_router


def create_app() -> FastAPI:
    """
    Application factory for the reconciliation sidecar.

    The reconciliation job itself runs from ``backend.polaris.cron.run``; this
    app only exposes its Prometheus metrics and a liveness probe.
    """
    app = FastAPI(title="polaris-recon")

    # Metrics endpoint (no prefix) – scraped directly by Prometheus.
    app.include_router(metrics_router)

    return app


app = create_app()
