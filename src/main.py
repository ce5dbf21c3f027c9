"""
Case SLA Engine - Main Application
=================================

Host process for the case lifecycle and SLA escalation engine.

Runs the background sweeps on a schedule and exposes a small operational
API for health checks and job control. Case CRUD is served elsewhere;
this service owns deadlines, overdue marking, escalation, workload
reconciliation and digests.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request

from config import settings
from core import ApplicationException
from cases.application import HealthResponse
from cases.container import CaseEngine
from cases.interfaces import jobs_router
from shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler
)
from shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


def create_app(engine_factory: Optional[Callable[[], CaseEngine]] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        engine_factory: Builds the CaseEngine on startup
            (defaults to ``CaseEngine.from_settings``)
    """
    engine_factory = engine_factory or CaseEngine.from_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """
        Application lifespan manager.

        STARTUP:
        1. Setup structured logging
        2. Build the case engine
        3. Create tables and load the SLA configuration
        4. Register the sweep jobs and start the scheduler

        SHUTDOWN:
        1. Stop the scheduler and config watcher
        2. Drain pending notifications
        3. Close the Slack client and database connections
        """
        # === STARTUP ===
        setup_logging(settings.log_level, settings.environment)
        logger.info("Starting Case SLA Engine", extra={
            "version": settings.app_version,
            "environment": settings.environment,
            "store_backend": settings.store_backend
        })

        engine = engine_factory()
        await engine.prepare()
        engine.register_jobs()

        if engine.settings.scheduler_enabled:
            engine.start()
        else:
            logger.info("Scheduler disabled, sweeps run only on demand")

        app.state.engine = engine
        logger.info("Case SLA Engine started successfully")

        yield  # Application runs here

        # === SHUTDOWN ===
        logger.info("Shutting down Case SLA Engine")
        await engine.stop()
        logger.info("Case SLA Engine shutdown complete")

    app = FastAPI(
        title="Case SLA Engine",
        description="""
    ## Case Lifecycle & SLA Escalation Engine

    Background sweeps keep case SLAs honest:

    - **sla_breach** marks active cases past their due date as overdue
    - **escalation** escalates cases overdue past the grace period
    - **workload_reconciliation** recomputes analyst workload counters
    - **daily_digest** sends daily digests to opted-in users
    - **liveness** records store health counts

    **SLA deadlines (hours):** P1 = 1, P2 = 4, P3 = 24 (hot-reloaded from `sla_config.yaml`)
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # === Health Check Endpoint ===

    @app.get("/health", tags=["Health"], response_model=HealthResponse, responses={
        200: {
            "description": "Service health",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "version": "1.0.0",
                        "environment": "development",
                        "store_backend": "sql",
                        "scheduler_running": True,
                        "pending_notifications": 0,
                        "snapshot": {
                            "timestamp": "2024-01-15T10:00:00+00:00",
                            "database": True,
                            "total_cases": 120,
                            "active_cases": 34,
                            "overdue_cases": 2,
                            "active_users": 12
                        }
                    }
                }
            }
        }
    })
    async def health_check(request: Request) -> HealthResponse:
        """
        Health check endpoint for load balancers and orchestrators.

        Reports the last liveness snapshot; the store is not queried here.
        The service is degraded when the last snapshot saw a failing store.
        """
        engine: CaseEngine = request.app.state.engine
        snapshot = engine.liveness.last_snapshot
        healthy = snapshot is None or snapshot.database

        return HealthResponse(
            status="healthy" if healthy else "degraded",
            version=engine.settings.app_version,
            environment=engine.settings.environment,
            store_backend=engine.settings.store_backend,
            scheduler_running=engine.scheduler.is_running,
            pending_notifications=engine.dispatcher.pending_count,
            snapshot=snapshot.to_dict() if snapshot else None,
        )

    # === Register Module Routers ===
    app.include_router(jobs_router)

    @app.get("/", tags=["Root"], responses={
        200: {
            "description": "API information",
            "content": {
                "application/json": {
                    "example": {
                        "service": "Case SLA Engine",
                        "version": "1.0.0",
                        "architecture": "Clean Architecture / Modular Monolith",
                        "docs": "/docs",
                        "health": "/health",
                        "jobs": "/jobs"
                    }
                }
            }
        }
    })
    async def root():
        """Root endpoint with API information."""
        return {
            "service": "Case SLA Engine",
            "version": settings.app_version,
            "architecture": "Clean Architecture / Modular Monolith",
            "docs": "/docs",
            "health": "/health",
            "jobs": "/jobs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
