from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.admin import router as admin_router
from app.api.analytics import router as analytics_router
from app.api.errors import install_error_handlers
from app.api.events import router as events_router
from app.api.health import router as health_router
from app.api.metrics_endpoint import router as metrics_router
from app.api.progress import router as progress_router
from app.api.views import router as views_router
from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.db.engine import async_session_factory, lifespan_db
from app.db.redis import lifespan_redis, redis_pool
from app.middleware.metrics import MetricsMiddleware
from app.middleware.request_context import RequestContextMiddleware
from app.services.container import build_services

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Nesting tears down in reverse order (LIFO) even if one step fails.
    async with lifespan_db():
        async with lifespan_redis():
            # Tests install their own services before startup.
            if getattr(app.state, "services", None) is None:
                app.state.services = build_services(
                    SETTINGS,
                    session_factory=async_session_factory,
                    redis_client=redis_pool,
                )
            try:
                yield
            finally:
                await app.state.services.aclose()


app = FastAPI(
    title="progress-engine",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware execution order: last-added runs first (outermost layer).
# RequestContext (outermost) → Metrics → CORS → route handler
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

install_error_handlers(app)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(events_router)
app.include_router(progress_router)
app.include_router(analytics_router)
app.include_router(views_router)
app.include_router(admin_router)

logger.info(
    "progress-engine started  env=%s log_level=%s port=%d docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
)
