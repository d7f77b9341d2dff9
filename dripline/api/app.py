"""FastAPI application instance."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dripline.api.routes import admin_tools, campaigns, events, subscriptions
from dripline.core.config import settings
from dripline.core.exceptions import (
    ConflictError,
    DataIntegrityViolation,
    DriplineError,
    InvalidTransitionError,
    NotFoundError,
    VersionRequiredError,
)
from dripline.db import models
from dripline.db.session import engine
from dripline.utils.logger import configure_logging, logger

_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (VersionRequiredError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (DataIntegrityViolation, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - startup hook
    configure_logging()
    # Ensure tables exist for local development. Alembic should manage in production.
    models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DriplineError)
async def dripline_error_handler(request: Request, exc: DriplineError) -> JSONResponse:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status_code, content={"detail": exc.message})
    logger.error("Unhandled domain error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": exc.message})


app.include_router(campaigns.router)
app.include_router(subscriptions.router)
app.include_router(events.router)
app.include_router(admin_tools.router)


@app.get("/health", tags=["system"])
async def health() -> dict[str, str]:
    """Simple uptime check."""

    return {"status": "ok"}
