"""
DB Coach - FastAPI Application
==============================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import Depends, FastAPI, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from dbcoach.api import conversations, streaming
from dbcoach.core.config import settings
from dbcoach.core.database import close_db, engine, init_db
from dbcoach.core.live import websocket_endpoint as live_ws_endpoint
from dbcoach.core.schemas import ErrorResponse, HealthResponse
from dbcoach.core.streaming.session_manager import StreamingSessionManager

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create conversation tables
    - Wire the session manager into the live hub

    Shutdown:
    - Stop running sessions (partial results are saved)
    - Close database connections
    """
    logger.info("Starting DB Coach", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    streaming.get_session_manager()
    logger.info("Streaming sessions ready", gemini=settings.gemini_enabled)

    yield

    logger.info("Shutting down DB Coach")
    await streaming.shutdown_session_manager()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="DB Coach - streaming database design assistant",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(
        manager: StreamingSessionManager = Depends(streaming.get_session_manager),
    ) -> HealthResponse:
        """Report application, database and generation backend status."""
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            database = "connected"
        except Exception as e:
            logger.warning("health_database_unreachable", error=str(e))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            generation_backend=manager.backend.name if manager.backend is not None else "templates",
            active_sessions=sum(1 for o in manager.sessions.values() if not o.session.is_terminal),
        )

    app.include_router(streaming.router)
    app.include_router(conversations.router)

    # ==========================================================================
    # WebSocket Endpoints
    # ==========================================================================

    @app.websocket("/api/v1/live/ws")
    async def live_websocket(websocket: WebSocket):
        """WebSocket endpoint for live session events and playback commands."""
        streaming.get_session_manager()
        await live_ws_endpoint(websocket)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
            "live": "/api/v1/live/ws",
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

def run() -> None:
    import uvicorn

    uvicorn.run(
        "dbcoach.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )


if __name__ == "__main__":
    run()
