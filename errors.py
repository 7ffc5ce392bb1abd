import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from config import Settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[List[Dict[str, str]]] = None,
        detail: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.errors = errors
        # internal cause, only rendered in development
        self.detail = detail
        super().__init__(self.message)

    def to_body(self) -> dict:
        body = {"message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class ValidationFailed(AppError):
    status_code = 400
    default_message = "Validation failed"


class Unauthorized(AppError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(AppError):
    status_code = 403
    default_message = "Access denied"


class InvalidOtp(AppError):
    """Wrong code, expired code and unknown email all look the same."""

    status_code = 400
    default_message = "Invalid OTP"


class DependencyFailure(AppError):
    status_code = 502
    default_message = "Upstream service failed"


def format_validation_errors(exc: RequestValidationError) -> List[Dict[str, str]]:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return errors


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        body = exc.to_body()
        if settings.is_development and exc.detail:
            body["error"] = exc.detail
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        failure = ValidationFailed(errors=format_validation_errors(exc))
        return JSONResponse(status_code=failure.status_code, content=failure.to_body())

    @app.exception_handler(PyMongoError)
    async def handle_database_error(request: Request, exc: PyMongoError):
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        failure = DependencyFailure("Database unavailable")
        body = failure.to_body()
        if settings.is_development:
            body["error"] = str(exc)
        return JSONResponse(status_code=failure.status_code, content=body)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = {"message": "Internal server error"}
        if settings.is_development:
            body["error"] = str(exc)
        return JSONResponse(status_code=500, content=body)
