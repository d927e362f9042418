import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from perfstat.config import settings
from perfstat.exceptions import FieldError, MetadataError, NavigationExhausted, PersistenceFailure
from perfstat.logging_setup import configure_logging
from perfstat.api.middleware import add_request_id, enforce_body_size, log_requests
from perfstat.api import deps
from perfstat.services.autosave import AutoSaver

# Routers
from perfstat.api.routers import performance, sessions, system

configure_logging(settings.logging)
logger = logging.getLogger("perfstat.api")


def _error(request: Request, status_code: int, error: str, detail: str) -> JSONResponse:
    payload = {"error": error, "detail": detail}
    rid = getattr(request.state, "request_id", None)
    if rid:
        payload["request_id"] = rid
    return JSONResponse(status_code=status_code, content=payload)


@asynccontextmanager
async def lifespan(app: FastAPI):
    saver = None
    if settings.autosave.enabled:
        saver = AutoSaver(deps.get_form_service(), deps.get_session_store(), settings.autosave.interval_seconds)
        saver.start()
    try:
        yield
    finally:
        if saver:
            saver.stop()


def create_app(
    db_path: Optional[Path] = None,
    catalog_path: Optional[Path] = None,
    rollup_path: Optional[Path] = None,
) -> FastAPI:
    """
    Factory to build the FastAPI application.
    Path overrides update the global settings and reset the cached dependencies (used by tests).
    """
    if db_path:
        settings.paths.db_path = db_path
    if catalog_path:
        settings.paths.catalog_path = catalog_path
    if rollup_path:
        settings.paths.rollup_path = rollup_path
    if db_path or catalog_path or rollup_path:
        deps.reset()

    app = FastAPI(title="PerfStat API", version=settings.app.version, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Custom Middleware
    app.middleware("http")(add_request_id)
    app.middleware("http")(enforce_body_size)
    if settings.logging.log_requests:
        app.middleware("http")(log_requests)

    app.include_router(system.router)
    app.include_router(performance.router)
    app.include_router(sessions.router)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        from starlette.exceptions import HTTPException as StarletteHTTPException
        if isinstance(exc, StarletteHTTPException):
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

        rid = getattr(request.state, "request_id", None)
        logger.exception("Unhandled error", extra={"path": str(request.url), "request_id": rid})
        return _error(request, 500, "internal_error", "Unexpected server error")

    @app.exception_handler(MetadataError)
    async def metadata_exception_handler(request: Request, exc: MetadataError):
        return _error(request, 404, "not_found", str(exc))

    @app.exception_handler(NavigationExhausted)
    async def navigation_exception_handler(request: Request, exc: NavigationExhausted):
        logger.info("Navigation exhausted", extra={"path": request.url.path, "detail": str(exc)})
        return _error(request, 404, "no_further_content", str(exc))

    @app.exception_handler(PersistenceFailure)
    async def persistence_exception_handler(request: Request, exc: PersistenceFailure):
        return _error(request, 503, "persistence_failure", str(exc))

    @app.exception_handler(FieldError)
    async def field_exception_handler(request: Request, exc: FieldError):
        return _error(request, 422, "invalid_field", str(exc))

    return app

# Module-level app for uvicorn entrypoint
app = create_app()
