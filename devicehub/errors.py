from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from devicehub.adapters.base import (
    DeviceAdapterError,
    DeviceBackoffActive,
    DeviceCommandParameterError,
    DeviceConnectionError,
)

HTTP_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, *, device_id: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.device_id = device_id


def device_api_error(exc: DeviceAdapterError, *, device_id: int | None = None) -> ApiError:
    """Translate an adapter failure into the error the API reports for it."""
    if isinstance(exc, DeviceBackoffActive):
        return ApiError(status_code=503, code="DEVICE_BACKING_OFF", message=exc.message, device_id=device_id)
    if isinstance(exc, DeviceConnectionError):
        return ApiError(status_code=502, code="DEVICE_UNREACHABLE", message=exc.message, device_id=device_id)
    if isinstance(exc, DeviceCommandParameterError):
        return ApiError(status_code=400, code="INVALID_COMMAND_PARAMETERS", message=exc.message, device_id=device_id)
    return ApiError(status_code=502, code="DEVICE_COMMAND_FAILED", message=exc.message, device_id=device_id)


def http_error_code(status_code: int) -> str:
    return HTTP_ERROR_CODES.get(status_code, "HTTP_ERROR")


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    device_id: int | None = None,
) -> JSONResponse:
    error: dict[str, object] = {
        "code": code,
        "message": message,
        "request_id": get_request_id(request),
    }
    if device_id is not None:
        error["device_id"] = device_id
    return JSONResponse(status_code=status_code, content={"error": error})
