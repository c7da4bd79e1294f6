"""
Feedback Triage - Main Application
==================================

AI triage pipeline for customer feedback threads.

Modules:
- Pipeline: durable job ledger, thread-state extraction, gatekeeper,
  work item generation

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services, orchestrator, worker and DTOs
- Domain: Entities, gatekeeper rules and prompts
- Infrastructure: Database, LLM client, scheduler
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from feedback_triage.config import settings
from feedback_triage.core import ResourceNotFoundException
from feedback_triage.infrastructure.database import (
    close_database,
    create_tables,
    init_database,
    ping_database,
)
from feedback_triage.pipeline.interfaces import admin_router, pipeline_router
from feedback_triage.runtime import PipelineRuntime
from feedback_triage.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    global_exception_handler,
    not_found_handler,
)
from feedback_triage.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)

LLM_HEALTH_TIMEOUT_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Build circuit breaker, LLM client and worker
    4. Start the poll loop (unless run_pipeline_worker is off)

    SHUTDOWN:
    1. Stop the poll loop and wait for the current cycle
    2. Close the LLM client
    3. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Feedback Triage", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()

    # Create tables (for development - use migrations in production)
    try:
        await create_tables()
    except Exception as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    runtime = PipelineRuntime()
    app.state.runtime = runtime
    app.state.circuit_breaker = runtime.circuit_breaker
    app.state.llm_client = runtime.llm_client

    if settings.run_pipeline_worker:
        await runtime.start()
    else:
        logger.info("Pipeline worker disabled in this process")

    logger.info("Feedback Triage started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Feedback Triage")
    await runtime.stop(timeout=settings.llm_request_timeout_seconds)
    await close_database()
    logger.info("Feedback Triage shutdown complete")


app = FastAPI(
    title="Feedback Triage API",
    description="""
    ## AI Triage Pipeline for Feedback Threads

    Customer messages enqueue a pipeline job. Workers claim jobs from the
    database, rebuild the thread's state with an LLM, decide whether the
    thread needs a work item, clarifying questions or nothing, and persist
    the outcome.

    **Endpoints:**
    - `POST /pipeline/jobs` - Enqueue a thread for analysis
    - `GET /pipeline/jobs/stats` - Job counts by status
    - `GET /pipeline/jobs/{public_id}` - Job status and result
    - `GET /pipeline/threads/{thread_id}/jobs` - Recent jobs of a thread
    - `POST /admin/reset-circuit-breaker` - Close the LLM circuit breaker
    - `GET /health`, `GET /ready` - Liveness and readiness

    All `/pipeline` and `/admin` routes require the `X-API-Secret` header.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ResourceNotFoundException, not_found_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(pipeline_router)
app.include_router(admin_router)


# === Health Check Endpoints ===

@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness: the process is up and serving requests."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/ready", tags=["Health"], responses={
    200: {
        "description": "Service is ready",
        "content": {
            "application/json": {
                "example": {
                    "status": "ready",
                    "checks": {
                        "database": "connected",
                        "pipeline_worker": "running",
                        "llm": "reachable",
                        "circuit_breaker": {"state": "closed", "consecutiveFailures": 0}
                    }
                }
            }
        }
    },
    503: {"description": "Database unreachable"}
})
async def readiness_check(request: Request):
    """
    Readiness probe.

    Reports database connectivity, the poll loop, LLM reachability and the
    circuit breaker. Only a database outage makes the service not ready.
    """
    checks = {}
    ready = True

    try:
        await ping_database()
        checks["database"] = "connected"
    except Exception as e:
        checks["database"] = f"error: {e}"
        ready = False

    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        checks["pipeline_worker"] = "not_initialized"
    elif not settings.run_pipeline_worker:
        checks["pipeline_worker"] = "disabled"
    else:
        checks["pipeline_worker"] = "running" if runtime.scheduler.is_running else "stopped"

    llm_client = getattr(request.app.state, "llm_client", None)
    if llm_client is None:
        checks["llm"] = "not_configured"
    else:
        try:
            checks["llm"] = await asyncio.wait_for(
                llm_client.check_health(), timeout=LLM_HEALTH_TIMEOUT_SECONDS
            )
        except Exception as e:
            checks["llm"] = f"unreachable: {type(e).__name__}"

    breaker = getattr(request.app.state, "circuit_breaker", None)
    if breaker is not None:
        checks["circuit_breaker"] = breaker.snapshot().to_dict()

    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "version": settings.app_version,
            "checks": checks,
        }
    )


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Feedback Triage",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "feedback_triage.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
