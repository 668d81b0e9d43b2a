"""
FastAPI application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from learnhub import __version__
from learnhub.config import Settings, get_settings
from learnhub.dependencies import build_rate_limiter, close_clients
from learnhub.middleware import RateLimitMiddleware, SecurityHeadersMiddleware
from learnhub.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("API ready (version %s)", __version__)
    yield
    close_clients()
    logger.info("API shut down")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application. Settings passed in explicitly also replace the
    ``get_settings`` dependency so routes see the same values.
    """
    explicit = settings is not None
    settings = settings or get_settings()

    app = FastAPI(title="Learnhub API", version=__version__, lifespan=lifespan)
    if explicit:
        app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.rate_limit_max_requests:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=build_rate_limiter(settings),
            prefix=settings.api_prefix,
            exempt_paths=(
                f"{settings.api_prefix}/health",
                f"{settings.api_prefix}/stripe/webhook",
            ),
        )
    # Added last so it wraps everything, including 429 responses.
    app.add_middleware(SecurityHeadersMiddleware, hsts=settings.is_production)

    app.include_router(router, prefix=settings.api_prefix)
    return app
