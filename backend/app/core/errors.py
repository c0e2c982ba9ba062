"""
Domain error taxonomy and the FastAPI handlers that render it.
Every request-level failure is a DomainError carrying a machine-readable code.
"""
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class DomainError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code


class ValidationError(DomainError):
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthError(DomainError):
    code = "AUTH_ERROR"
    status_code = 401


class ConnectionNotLinkedError(AuthError):
    """The user has no stored connection for a source that needs one."""
    code = "MAIL_NOT_CONNECTED"
    status_code = 400


class CredentialRefreshError(AuthError):
    code = "TOKEN_REFRESH_FAILED"
    status_code = 400


class ForbiddenError(DomainError):
    code = "PERMISSION_ERROR"
    status_code = 403


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    status_code = 404


class RegistryInconsistency(NotFoundError):
    """A bridge report or poll referenced an unknown or expired request id."""
    code = "REQUEST_NOT_FOUND"


class ConflictError(DomainError):
    code = "CONFLICT"
    status_code = 409


class PlanningFailure(DomainError):
    code = "PLANNING_FAILED"
    status_code = 500


class SynthesisParseFailure(Exception):
    """Synthesis output could not be read as a structured answer. Never leaves the synthesizer."""


def _render(error: DomainError) -> dict:
    body = {"error": error.message, "code": error.code}
    if error.details is not None:
        body["details"] = error.details
    return body


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.error("domain_error", code=exc.code, path=request.url.path, message=exc.message)
        else:
            logger.warning("domain_error", code=exc.code, path=request.url.path, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content=_render(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.warning("validation_error", path=request.url.path)
        error = ValidationError("Invalid request body", details=jsonable_errors(exc))
        return JSONResponse(status_code=error.status_code, content=_render(error))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("unexpected_error", path=request.url.path, method=request.method, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "INTERNAL_ERROR"})


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx can hold exception instances, which are not JSON serialisable
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
