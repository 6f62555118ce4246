import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class CatExplorerError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message


class ValidationError(CatExplorerError):
    status_code = 400
    code = "validation_error"


class InvalidId(ValidationError):
    code = "invalid_id"

    def __init__(self, message: str = "Invalid cat ID"):
        super().__init__(message)


class NotFound(CatExplorerError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Cat sighting not found"):
        super().__init__(message)


class Unauthorized(CatExplorerError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class Forbidden(CatExplorerError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class UpstreamTimeout(CatExplorerError):
    """A store or identity call exceeded its wait bound."""

    status_code = 504
    code = "upstream_timeout"

    def __init__(self, message: str = "Upstream service timed out"):
        super().__init__(message)


class UpstreamUnavailable(CatExplorerError):
    status_code = 503
    code = "upstream_unavailable"

    def __init__(self, message: str = "Upstream service unavailable"):
        super().__init__(message)


def _error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


async def handle_cat_explorer_error(request: Request, exc: CatExplorerError) -> JSONResponse:
    headers = None
    if isinstance(exc, Unauthorized):
        headers = {"WWW-Authenticate": "Bearer"}
    if isinstance(exc, (UpstreamTimeout, UpstreamUnavailable)):
        # Diagnostics were logged where the failure was caught; clients get the generic message
        logger.warning("%s %s failed upstream: %s", request.method, request.url.path, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.code, exc.message),
        headers=headers,
    )


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    message = "; ".join(problems) or "Invalid request"
    return JSONResponse(status_code=400, content=_error_body(ValidationError.code, message))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CatExplorerError, handle_cat_explorer_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
