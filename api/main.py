from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import asyncpg
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from core import db, errors
from core.github import CommitLookup
from core.settings import Settings, load_settings
from health import router as health_router
from runsets import router as runsets_router

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_commit_lookup(settings: Settings) -> CommitLookup:
    return CommitLookup(
        base_url=settings.github_api_url,
        repositories=settings.product_repositories,
        token=settings.github_token,
    )


def create_app(
    settings: Settings | None = None,
    *,
    pool: asyncpg.Pool | None = None,
    commit_lookup: CommitLookup | None = None,
) -> FastAPI:
    """
    Build the API. `pool` and `commit_lookup` may be injected (tests); otherwise
    they are created from settings when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = settings or load_settings()
        configure_logging(app_settings.log_level)
        app.state.settings = app_settings
        app.state.commit_lookup = commit_lookup or build_commit_lookup(app_settings)

        # Initialize the DB pool once per process unless one was handed in.
        owns_pool = pool is None
        app.state.pool = await db.create_pool(app_settings) if owns_pool else pool
        logger.info(
            "api_started pool_max_size=%s products=%s",
            app_settings.pool_max_size,
            ",".join(sorted(app_settings.product_repositories)),
        )
        try:
            yield
        finally:
            if owns_pool:
                await db.close_pool(app.state.pool)
            app.state.pool = None

    # No generated docs routes: every path outside the route table is a 404.
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

    app.add_exception_handler(errors.RequestError, errors.request_error_handler)
    app.add_exception_handler(StarletteHTTPException, errors.http_exception_handler)
    app.add_exception_handler(RequestValidationError, errors.validation_error_handler)
    app.add_exception_handler(Exception, errors.unhandled_error_handler)

    app.include_router(runsets_router.router, tags=["runsets"])
    app.include_router(health_router.router, tags=["health"])
    return app


app = create_app()
