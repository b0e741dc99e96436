"""
questline.api.main — FastAPI application entry point
=====================================================

Every response body is one JSON object carrying a boolean ``success``;
failures add ``error`` (human message) and ``code`` (stable error code).

Run with::

    uvicorn questline.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

load_dotenv()

from questline import __version__  # noqa: E402
from questline.api.deps import get_cache, get_config, get_engine  # noqa: E402
from questline.api.routes.admin import router as admin_router  # noqa: E402
from questline.api.routes.leaderboard import router as leaderboard_router  # noqa: E402
from questline.api.routes.quests import router as quests_router  # noqa: E402
from questline.database.engine import init_db  # noqa: E402
from questline.exceptions import QuestlineError  # noqa: E402

logger = logging.getLogger(__name__)

_HTTP_ERROR_CODES = {
    400: "ValidationFailed",
    401: "InvalidAuthentication",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    409: "Conflict",
}


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — create tables, seed, warm the cache."""
    config = get_config()
    engine = get_engine()
    init_db(engine, ranks=config.ranks or None)
    cache = get_cache()
    logger.info(
        "%s API started — engine ready (%s), rank table v%d",
        config.service_name, engine.url.database, cache.rank_table.version,
    )
    yield
    logger.info("%s API shutting down", config.service_name)


app = FastAPI(
    title="Questline Reward Ledger API",
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


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------
@app.exception_handler(QuestlineError)
async def _questline_error(request: Request, exc: QuestlineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        {
            "success": False,
            "error": str(exc.detail),
            "code": _HTTP_ERROR_CODES.get(exc.status_code, "HTTPError"),
        },
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "body"
    if first.get("type") == "missing":
        message = f"Missing required field: {field}"
    else:
        message = f"Invalid field {field}: {first.get('msg', 'invalid value')}"
    return JSONResponse(
        {"success": False, "error": message, "code": "ValidationFailed"},
        status_code=400,
    )


@app.exception_handler(SQLAlchemyError)
async def _storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(
        "Storage failure on %s %s", request.method, request.url.path, exc_info=exc,
    )
    return JSONResponse(
        {
            "success": False,
            "error": "Internal server error",
            "code": "TransientFailure",
            "retryable": True,
        },
        status_code=500,
    )


# Mount routers
app.include_router(quests_router, prefix="/api")
app.include_router(leaderboard_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"success": True, "status": "ok"}
