"""FastAPI application exposing the deployment trigger endpoint."""

from __future__ import annotations

import json
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from clientstack.core.logging import get_logger

TOKEN_HEADER = "x-deployment-token"
INVALID_PATH_MESSAGE = "Invalid webhook path"


def _status_response(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"status": status, "message": message})


def _parse_bearer_token(value: str | None) -> str | None:
    if value is None:
        return None
    parts = value.strip().split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def presented_token(request: Request) -> str | None:
    """Header first, then ``Authorization: Bearer``, then the ``token`` query parameter."""
    header = (request.headers.get(TOKEN_HEADER) or "").strip()
    if header:
        return header
    bearer = _parse_bearer_token(request.headers.get("authorization"))
    if bearer:
        return bearer
    query = (request.query_params.get("token") or "").strip()
    return query or None


def _decode_payload(body: bytes) -> dict[str, Any] | None:
    if not body.strip():
        return None
    try:
        decoded = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return decoded if isinstance(decoded, dict) else None


def create_app(service: Any) -> FastAPI:
    api_config = service.config.api
    max_request_body_bytes = max(1024, int(api_config.max_request_body_bytes))
    logger = get_logger("clientstack.api", level=service.config.logging.level)

    app = FastAPI(
        title="clientstack webhook",
        version="0.1.0",
        docs_url="/docs" if api_config.docs_enabled else None,
        redoc_url="/redoc" if api_config.docs_enabled else None,
        openapi_url="/openapi.json" if api_config.docs_enabled else None,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(api_config.trusted_hosts) or ["*"])

    async def _request_body_too_large(request: Request) -> bool:
        raw_content_length = request.headers.get("content-length")
        if raw_content_length is not None:
            try:
                content_length = int(raw_content_length)
            except ValueError:
                content_length = -1
            if content_length > max_request_body_bytes:
                return True
            if content_length >= 0:
                return False
        body = await request.body()
        return len(body) > max_request_body_bytes

    @app.middleware("http")
    async def body_limit_middleware(request: Request, call_next: Any) -> Response:
        if request.method.upper() in {"POST", "PUT", "PATCH"} and await _request_body_too_large(request):
            return _status_response(413, "Request body too large")
        return await call_next(request)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            logger.warning(
                "invalid webhook path",
                extra={"event_action": "webhook_route", "event_outcome": "failure", "payload": {"path": request.url.path}},
            )
            return _status_response(404, INVALID_PATH_MESSAGE)
        return _status_response(exc.status_code, str(exc.detail))

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "event_bus": service.event_bus.backend}

    @app.post("/webhook/{client}/{environment}")
    async def webhook(client: str, environment: str, request: Request) -> JSONResponse:
        payload = _decode_payload(await request.body())
        token = presented_token(request)
        logger.info(
            "webhook received",
            extra={
                "event_action": "webhook_received",
                "client": client,
                "environment": environment,
            },
        )
        # One worker thread per trigger; the pipeline blocks on git and npm.
        result = await run_in_threadpool(service.trigger, client, environment, token, payload)
        response = _status_response(result.http_status, result.message)
        response.headers["X-Deployment-Id"] = result.record.deployment_id
        return response

    return app
