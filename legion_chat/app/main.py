"""FastAPI backend for Legion chat."""

from __future__ import annotations

import logging
import re
import uuid
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routes import chat as chat_routes
from .routes import conversations as conversations_routes
from .. import config
from ..db.session import dispose_engine
from ..engine import model_client
from ..engine.errors import ChatError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    limits = httpx.Limits(
        max_connections=max(1, config.MODEL_MAX_CONCURRENCY),
        max_keepalive_connections=max(1, config.MODEL_MAX_CONCURRENCY),
    )
    timeout = httpx.Timeout(config.MODEL_TIMEOUT_SECONDS)
    client = httpx.AsyncClient(timeout=timeout, limits=limits)
    model_client.set_client(client)
    if not config.model_configured():
        logger.warning("MODEL_API_KEY not set; chat endpoints will return 503")
    try:
        yield
    finally:
        model_client.set_client(None)
        await client.aclose()
        await dispose_engine()


app = FastAPI(title="Legion Chat API", lifespan=lifespan)

_cors_origins = config.cors_allow_origins()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=False if _cors_origins == ["*"] else True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _safe_detail(detail: object) -> str:
    if isinstance(detail, str):
        return detail
    return "Request failed"


def _maybe_error_code(detail: str) -> str | None:
    if re.fullmatch(r"[a-z0-9_]+", detail or ""):
        return detail
    return None


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error_response(
    request_id: str,
    status_code: int,
    detail: str,
    error_code: str | None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload: dict[str, object] = {"detail": detail, "request_id": request_id}
    if error_code:
        payload["error_code"] = error_code
    resp = JSONResponse(status_code=status_code, content=payload, headers=headers)
    resp.headers["X-Request-ID"] = request_id
    return resp


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Legion Chat API"}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = _request_id(request)
    detail = _safe_detail(exc.detail)
    logger.info("HTTPException %s request_id=%s detail=%s", exc.status_code, request_id, detail)
    return _error_response(request_id, exc.status_code, detail, _maybe_error_code(detail), exc.headers)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    request_id = _request_id(request)
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
    logger.info(
        "ChatError %s request_id=%s kind=%s detail=%s", exc.status_code, request_id, exc.kind.value, exc.message
    )
    return _error_response(request_id, exc.status_code, exc.message, exc.error_code, headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = _request_id(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    detail = f"{location}: {first.get('msg', 'invalid')}" if location else str(first.get("msg", "Invalid request"))
    logger.info("RequestValidationError request_id=%s detail=%s", request_id, detail)
    return _error_response(request_id, 400, detail, "validation")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = _request_id(request)
    logger.exception("Unhandled exception request_id=%s", request_id)
    return _error_response(request_id, 500, "Internal server error", "internal_server_error")


app.include_router(chat_routes.router)
app.include_router(conversations_routes.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)
