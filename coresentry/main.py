"""
Core Sentry - Main Application
==============================

FastAPI host for the decision engine: telemetry ingress, configuration
API and the decision stream.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coresentry.api.routes import router as api_router
from coresentry.config import Settings, get_settings
from coresentry.core.decision_engine import DecisionEngine
from coresentry.utils.logging import get_logger, set_correlation_id, setup_logging

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[DecisionEngine] = None,
    configure_logging: bool = True
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use, defaults to the environment
        engine: Pre-built engine (tests inject one with a mock transport)
        configure_logging: Install the structured root log handler
    """
    settings = settings or get_settings()

    if configure_logging:
        setup_logging(
            service_name=settings.service_name,
            log_level=settings.log_level,
            json_output=settings.log_json
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        logger.info(
            f"Starting {settings.service_name} v{settings.service_version}",
            extra={
                "version": settings.service_version,
                "advisory_provider": settings.advisory_provider.value,
                "cooldown_ms": settings.cooldown_ms,
            }
        )

        app.state.settings = settings
        app.state.engine = engine or DecisionEngine.from_settings(settings)
        logger.info(
            "Decision engine initialized",
            extra={"advisory_endpoint": app.state.engine.advisory.endpoint}
        )

        yield

        logger.info("Shutting down decision engine...")
        await app.state.engine.close()

    app = FastAPI(
        title="Core Sentry",
        description="Self-healing decision engine for event-loop telemetry",
        version=settings.service_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())

        set_correlation_id(correlation_id)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id

        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": str(exc) if settings.debug else "An error occurred"
            }
        )

    @app.get("/health", tags=["health"])
    async def health_check():
        return {
            "status": "healthy",
            "service": settings.service_name,
            "version": settings.service_version
        }

    @app.get("/ready", tags=["health"])
    async def readiness_check(request: Request):
        status = request.app.state.engine.status()
        return {
            "status": "ready",
            "service": settings.service_name,
            "phase": status.phase.value,
            "in_flight": status.in_flight,
        }

    app.include_router(api_router, prefix="/api/v1")

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "coresentry.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )


if __name__ == "__main__":
    main()
