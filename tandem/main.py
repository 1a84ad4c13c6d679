"""
Tandem — ASGI Application Entry Point

One process serves both surfaces:
- the Socket.IO endpoint (pairing, signaling relay, chat)
- a small FastAPI app (health check and stats)

The FastAPI lifespan owns the two background loops: the periodic
``stats`` broadcast and the housekeeping sweep.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import socketio
import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from tandem.api.router import router as api_router
from tandem.config import Settings, get_settings
from tandem.realtime.gateway import SocketGateway, create_socketio_server
from tandem.schemas.stats import HealthResponse
from tandem.services.engine import MatchmakingEngine

# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger("tandem")


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise

        logger.info(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return response


# ---------------------------------------------------------------------------
# Application factories
# ---------------------------------------------------------------------------

def create_app(
    engine: MatchmakingEngine | None = None,
    gateway: SocketGateway | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the HTTP app around ``engine``.

    When a ``gateway`` is given, the lifespan runs its stats broadcast and
    housekeeping loops and cancels them on shutdown.
    """
    settings = settings or get_settings()
    engine = engine or MatchmakingEngine.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "startup_begin",
            environment=settings.ENVIRONMENT,
            log_level=settings.LOG_LEVEL,
        )

        tasks: list[asyncio.Task] = []
        if gateway is not None:
            tasks.append(asyncio.create_task(
                gateway.run_periodic(
                    "stats_broadcast", settings.STATS_INTERVAL_SECONDS, gateway.broadcast_stats
                )
            ))
            tasks.append(asyncio.create_task(
                gateway.run_periodic(
                    "housekeeping", settings.SWEEP_INTERVAL_SECONDS, gateway.run_housekeeping
                )
            ))
        logger.info("startup_complete", background_tasks=len(tasks))

        yield

        logger.info("shutdown_begin")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("shutdown_complete")

    app = FastAPI(
        title="Tandem",
        description="Anonymous one-to-one pairing and relay server",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )
    app.state.engine = engine

    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["health"], response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Liveness probe with the current counters."""
        return HealthResponse(**engine.stats())

    app.include_router(api_router, prefix="/api/v1")
    return app


def create_asgi_app(settings: Settings | None = None) -> socketio.ASGIApp:
    """Wire engine, Socket.IO server and HTTP app into one ASGI callable."""
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    engine = MatchmakingEngine.from_settings(settings)
    sio = create_socketio_server(settings)
    gateway = SocketGateway(engine, sio)
    http_app = create_app(engine=engine, gateway=gateway, settings=settings)

    return socketio.ASGIApp(
        sio,
        other_asgi_app=http_app,
        socketio_path=settings.SOCKETIO_PATH,
    )


app = create_asgi_app()
