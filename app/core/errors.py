import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors reported to the caller as `{"error": ..., "detalhe": ...}`."""

    status_code = 500
    default_message = "internal_error"

    def __init__(self, message: str | None = None, detail: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.detail:
            body["detalhe"] = self.detail
        return body


class ValidationError(ServiceError):
    status_code = 400
    default_message = "invalid_request"


class NotFound(ServiceError):
    status_code = 404
    default_message = "not_found"


class Forbidden(ServiceError):
    status_code = 403
    default_message = "forbidden"


class Conflict(ServiceError):
    status_code = 409
    default_message = "conflict"


class InsufficientCredits(ServiceError):
    """Raised when a balance does not cover the amount being spent."""

    status_code = 400

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Saldo insuficiente: são necessários {required} créditos.",
            detail={"necessario": required, "disponivel": available, "faltam": max(0, required - available)},
        )


class ExternalServiceError(ServiceError):
    status_code = 502
    default_message = "payment_provider_error"


class InternalError(ServiceError):
    status_code = 500
    default_message = "internal_error"


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_body(), status_code=exc.status_code)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse({"error": "invalid_payload", "detalhe": {"campos": fields}}, status_code=400)


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "internal_error"}, status_code=500)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
