"""FastAPI application factory for Corrispettivi-Engine."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from corrispettivi_engine.common.config import get_settings
from corrispettivi_engine.common.schemas import HealthResponse


def create_app() -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        from corrispettivi_engine.deps import (
            get_aggregation_service,
            get_audit_service,
            get_authority_client,
            get_db,
            get_outcome_poller,
        )
        db = get_db()
        await db.init()
        await db.create_all()
        poller = get_outcome_poller()
        await poller.restore_pending()
        poller.start()
        audit = get_audit_service()
        audit.start_sweeper()
        yield
        # Shutdown
        await poller.stop()
        await audit.stop_sweeper()
        await get_aggregation_service().drain()
        await audit.drain()
        await get_authority_client().close()
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    # Mount routers
    from corrispettivi_engine.ingestion.router import router as ingestion_router
    from corrispettivi_engine.anomaly.router import router as anomaly_router
    from corrispettivi_engine.aggregation.router import router as aggregation_router
    from corrispettivi_engine.audit.router import router as audit_router

    prefix = settings.api_prefix
    app.include_router(ingestion_router, prefix=prefix, tags=["ingestion"])
    app.include_router(anomaly_router, prefix=prefix, tags=["anomaly"])
    app.include_router(aggregation_router, prefix=prefix, tags=["daily-reports"])
    app.include_router(audit_router, prefix=prefix, tags=["audit"])

    return app
