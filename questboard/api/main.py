"""
questboard.api.main — FastAPI application entry point
=======================================================

Run with::

    uvicorn questboard.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from questboard import __version__  # noqa: E402
from questboard.api.deps import get_engine  # noqa: E402
from questboard.api.routes.admin import router as admin_router  # noqa: E402
from questboard.api.routes.public import router as public_router  # noqa: E402
from questboard.exceptions import (  # noqa: E402
    BadgeNotFoundError,
    LeaseLostError,
    MissionNotFoundError,
    QuestboardError,
    QuestboardInputError,
    TransactionRetryExhausted,
    UserNotFoundError,
    ZoneNotFoundError,
)

logger = logging.getLogger(__name__)

_NOT_FOUND = (UserNotFoundError, MissionNotFoundError, BadgeNotFoundError, ZoneNotFoundError)


def _cors_origins() -> list[str]:
    """Allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    engine = get_engine()
    logger.info("Questboard API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Questboard API shutting down")


app = FastAPI(
    title="Questboard API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(public_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.exception_handler(QuestboardError)
async def questboard_error_handler(request: Request, exc: QuestboardError) -> JSONResponse:
    """Map engine errors onto HTTP status codes."""
    if isinstance(exc, _NOT_FOUND):
        status_code = 404
    elif isinstance(exc, QuestboardInputError):
        status_code = 400
    elif isinstance(exc, LeaseLostError):
        status_code = 409
    elif isinstance(exc, TransactionRetryExhausted):
        status_code = 503
    else:
        status_code = 500
    if status_code >= 500:
        logger.error("Request failed: %s", exc, extra={"details": exc.details})
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


@app.get("/api/health")
def health():
    return {"status": "ok", "version": __version__}
