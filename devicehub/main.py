import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from devicehub.db import engine
from devicehub.errors import ApiError, error_response, http_error_code
from devicehub.logging_utils import setup_json_logging
from devicehub.routers import devices, webhooks
from devicehub.runtime import DeviceRuntime
from devicehub.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from devicehub.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(level=settings.log_level, service=settings.app_name)
logger = logging.getLogger("devicehub.request")
runtime_logger = logging.getLogger("devicehub.runtime")

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "organization_id": getattr(request.state, "organization_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        device_id=exc.device_id,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=exc.status_code,
        code=http_error_code(exc.status_code),
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(devices.router)
app.include_router(webhooks.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        runtime_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    runtime_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_device_runtime() -> None:
    if getattr(app.state, "device_runtime", None) is not None:
        return
    app.state.device_runtime = DeviceRuntime.build(settings)


@app.on_event("shutdown")
async def stop_device_runtime() -> None:
    runtime: DeviceRuntime | None = getattr(app.state, "device_runtime", None)
    if runtime is None:
        return
    try:
        runtime.shutdown()
    except Exception:
        runtime_logger.exception("device_runtime_shutdown_failed")
    app.state.device_runtime = None


@app.get("/health")
def health() -> dict[str, Any]:
    runtime: DeviceRuntime | None = getattr(app.state, "device_runtime", None)
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "service": settings.app_name,
        "schema_guard": schema_guard_result.to_dict(),
        "device_runtime": runtime.health() if runtime is not None else {"status": "not_started"},
    }
