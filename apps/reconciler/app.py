# apps/reconciler/app.py

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from apps.reconciler.config import settings

# OTEL setup
from apps.reconciler.utils.otel import setup_otel

# Routers (absolute imports)
from apps.reconciler.routers.audit_router import router as audit_router
from apps.reconciler.routers.metrics_router import router as metrics_router
from apps.reconciler.routers.reconciler_router import router as reconciler_router
from apps.reconciler.routers.signals_router import router as signals_router

# Pipeline
from apps.reconciler.services.pipeline import build_pipeline


def create_app(pipeline=None, instrument: bool = True) -> FastAPI:
    """
    Build the reconciler service. A prebuilt `pipeline` can be injected
    (tests, local runs); otherwise one is wired from settings on startup.
    """
    app = FastAPI(
        title="podsentry Reconciler",
        description="Turns runtime threat signals into safe, idempotent pod quarantine",
        version="0.1.0",
    )

    # ------------------------------------------------------------------
    # OpenTelemetry + Prometheus
    # ------------------------------------------------------------------
    if instrument:
        setup_otel(app, settings.OTEL_ENDPOINT, settings.LOG_LEVEL)
        # HTTP request metrics, latency, etc.
        Instrumentator().instrument(app)

    # Expose our explicit /metrics endpoint
    app.include_router(metrics_router)

    # ------------------------------------------------------------------
    # Business Routers
    # ------------------------------------------------------------------
    app.include_router(signals_router, prefix="/v1")
    app.include_router(audit_router, prefix="/v1")
    app.include_router(reconciler_router, prefix="/v1")

    app.state.pipeline = pipeline

    # ------------------------------------------------------------------
    # Lifecycle Events
    # ------------------------------------------------------------------
    @app.on_event("startup")
    async def startup_event():
        """Wire the pipeline and start the background workers."""
        if app.state.pipeline is None:
            app.state.pipeline = build_pipeline(settings)
        await app.state.pipeline.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.pipeline is not None:
            await app.state.pipeline.stop()

    @app.get("/healthz")
    def health_check():
        return {"status": "ok", "service": "reconciler"}

    return app


app = create_app()
