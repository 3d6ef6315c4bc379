"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from treepush.api.health import router as health_router
from treepush.api.sync import router as sync_router
from treepush.config import Settings
from treepush.database import create_engine
from treepush.exceptions import (
    ConfigError,
    ConflictError,
    FileSystemError,
    JobStateError,
    NetworkError,
    RemoteAPIError,
    SyncError,
)
from treepush.github.client import GitHubClient
from treepush.models.base import Base
from treepush.services.job_service import SyncJobService
from treepush.services.repo_service import RepositoryService
from treepush.services.store import InMemoryKeyValueStore, SqlKeyValueStore
from treepush.services.trigger_service import SyncTriggerService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    import httpx

logger = logging.getLogger(__name__)

# Most specific first: the first isinstance match wins.
_ERROR_STATUS: tuple[tuple[type[SyncError], int], ...] = (
    (ConflictError, 409),
    (JobStateError, 404),
    (ConfigError, 503),
    (NetworkError, 502),
    (RemoteAPIError, 502),
    (FileSystemError, 500),
)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


def _ensure_sqlite_dir(database_url: str) -> None:
    if database_url.startswith("sqlite") and "///" in database_url:
        db_path = database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)


async def init_services(app: FastAPI, http_client: httpx.AsyncClient | None = None) -> None:
    """Build the store, the GitHub client and the services on ``app.state``.

    Missing GitHub credentials do not prevent startup: the sync endpoints
    answer 503 until the settings are provided.
    """
    settings: Settings = app.state.settings

    if settings.store_backend == "sql":
        _ensure_sqlite_dir(settings.database_url)
        try:
            engine, session_factory = create_engine(settings)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except Exception as exc:
            logger.critical(
                "Failed to initialize database: %s. Check database path and permissions.", exc
            )
            raise
        store = SqlKeyValueStore(session_factory)
        await store.cleanup()
        app.state.engine = engine
        app.state.store = store
    else:
        app.state.engine = None
        app.state.store = InMemoryKeyValueStore()

    try:
        client: GitHubClient | None = GitHubClient.from_settings(settings, http_client)
    except ConfigError as exc:
        logger.warning("%s; sync endpoints are disabled", exc)
        client = None
    app.state.github_client = client

    if client is not None:
        app.state.job_service = SyncJobService(client, app.state.store, settings)
        app.state.repo_service = RepositoryService(client, settings)
    else:
        app.state.job_service = None
        app.state.repo_service = None
    app.state.trigger_service = SyncTriggerService(app.state.job_service, settings)


async def close_services(app: FastAPI) -> None:
    client: GitHubClient | None = app.state.github_client
    if client is not None:
        try:
            await client.close()
        except Exception as exc:
            logger.error("Error closing GitHub client: %s", exc, exc_info=True)

    engine = app.state.engine
    if engine is not None:
        try:
            await engine.dispose()
        except Exception as exc:
            logger.error("Error during engine disposal: %s", exc, exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info(
        "Starting treepush (debug=%s, store=%s, branch=%s)",
        settings.debug,
        settings.store_backend,
        settings.github_branch,
    )

    await init_services(app)

    yield

    await close_services(app)
    logger.info("treepush stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="treepush",
        description="Push a local file tree to GitHub through the Git Data API",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings

    app.include_router(health_router)
    app.include_router(sync_router)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        status_code = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
        if status_code >= 500:
            logger.error(
                "%s in %s %s: %s",
                type(exc).__name__,
                request.method,
                request.url.path,
                exc,
                exc_info=exc,
            )
        else:
            logger.info(
                "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
            )
        content: dict[str, object] = {"detail": str(exc)}
        if isinstance(exc, ConflictError) and exc.job_id is not None:
            content["job_id"] = exc.job_id
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Job store temporarily unavailable"},
        )

    return app


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings = Settings()
    uvicorn.run(
        "treepush.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
