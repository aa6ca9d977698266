"""
FastAPI application entry point.

Run with:
    uvicorn hazard_engine.main:app --reload --port 8000
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from hazard_engine.core.config import settings
from hazard_engine.core.logging_config import setup_logging, get_logger
from hazard_engine.core.errors import register_error_handlers
from hazard_engine.core.middleware import RequestLoggingMiddleware
from hazard_engine.core.health import HealthStatus, build_health_report

# ── Engine ──
from hazard_engine.providers.registry import ProviderRegistry
from hazard_engine.scoring.aggregator import AggregationEngine

# ── API routers ──
from hazard_engine.api.v1.assess import router as assess_router

setup_logging()
logger = get_logger(__name__)


def create_app(registry: Optional[ProviderRegistry] = None) -> FastAPI:
    """
    Build the application.

    With no registry, one is built from settings at startup and closed at
    shutdown. A registry passed in (tests, embedding services) is used as is
    and left open for its owner.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        owned = registry is None
        if owned:
            app.state.registry = ProviderRegistry.from_settings(settings)
            app.state.engine = AggregationEngine(app.state.registry)
        yield
        if owned:
            await app.state.registry.close()
        logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Multi-source climate hazard risk aggregation. Queries a government "
            "risk index, commercial property-risk APIs and river gauges "
            "concurrently, normalizes their scores and combines them into one "
            "confidence-scored assessment per location."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    if registry is not None:
        app.state.registry = registry
        app.state.engine = AggregationEngine(registry)

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)
    app.include_router(assess_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "providers": app.state.registry.names,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Provider health and cache reachability."""
        reg = app.state.registry
        report = await build_health_report(reg.health, reg.cache)
        status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
        return JSONResponse(status_code=status_code, content=report.to_dict())

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Liveness probe: is the process alive?"""
        return {"status": "alive"}

    return app


app = create_app()
