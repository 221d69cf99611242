# backend/myopia_api/errors.py
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(ApiError):
    status_code = 400
    default_message = "Invalid input"


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Unauthorized access."


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found"


class Conflict(ApiError):
    status_code = 400
    default_message = "Conflict"


class DuplicateDiagnosis(Conflict):
    default_message = "A diagnosis already exists for this retinal image."


class ServerError(ApiError):
    status_code = 500


class InferenceFailed(ApiError):
    """An inference model could not produce a usable result."""

    status_code = 500

    def __init__(self, model_name: str, cause):
        self.model_name = model_name
        self.cause = cause
        super().__init__(f"{model_name} inference failed: {cause}")


class InvalidResponse(InferenceFailed):
    pass


class ImageNotFound(NotFound):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Image file not found: {path}")


def _field_name(loc) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "form")]
    return ".".join(parts) or ".".join(str(p) for p in loc)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [{"field": _field_name(e.get("loc", ())), "message": e.get("msg", "")} for e in exc.errors()]
        return JSONResponse(status_code=400, content={"errors": errors})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
