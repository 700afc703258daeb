"""FastAPI application entrypoint for the ContentOS workflow core."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from src.approvals.router import router as approvals_router
from src.auth.middleware import attach_auth_context
from src.core.config import get_settings
from src.core.errors import WorkflowError
from src.core.logger import bind_request_context, clear_request_context, get_logger
from src.core.metrics import record_http_request, render_prometheus_metrics
from src.core.observability import capture_exception, init_sentry, sentry_scope
from src.distribution.router import router as distribution_router
from src.notifications.router import router as notifications_router
from src.storage.db import check_database, load_models
from src.storage.redis_client import check_redis


settings = get_settings()
logger = get_logger("contentos.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    auth_context = attach_auth_context(request)

    workspace_id = request.headers.get("x-workspace-id")
    if workspace_id is None and auth_context is not None:
        workspace_id = auth_context.workspace_id
    bind_request_context(
        request_id=request_id,
        workspace_id=workspace_id,
        actor_id=auth_context.user_id if auth_context is not None else None,
    )

    status_code = 500
    try:
        with sentry_scope(workspace_id=workspace_id, request_id=request_id):
            response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    if exc.status_code >= 500:
        capture_exception(exc)
        logger.error("workflow_error", path=request.url.path, code=exc.code, detail=exc.message)
    else:
        logger.info("workflow_rejected", path=request.url.path, code=exc.code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    sentry_enabled = init_sentry()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
        email_provider_configured=bool(settings.email_api_key.strip()),
    )
    if not settings.email_api_key.strip():
        logger.warning("email_provider_not_configured", detail="workflow emails will be simulated")


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = check_database()
    redis_ok, redis_error = check_redis()

    healthy = db_ok and redis_ok
    status = "ok" if healthy else "degraded"

    payload = {
        "status": status,
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
        },
    }

    return JSONResponse(content=payload, status_code=200 if healthy else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(approvals_router)
app.include_router(notifications_router)
app.include_router(distribution_router)
