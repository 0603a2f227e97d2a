import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from coachbook.domain.errors import DomainError, ProcessorError, SignatureError

PROBLEM_TYPE_VALIDATION = "https://coachbook.dev/problems/validation-error"
PROBLEM_TYPE_HTTP = "https://coachbook.dev/problems/http-error"
PROBLEM_TYPE_SERVER = "https://coachbook.dev/problems/server-error"
IGNORED_LOCATIONS = {"body", "query", "path"}

logger = logging.getLogger(__name__)


def problem_response(
    request: Request,
    *,
    status: int,
    title: str,
    detail: str,
    type_: str = "about:blank",
    errors: list[dict[str, str]] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """RFC 7807 body; the request id ties it back to the request log line."""
    return JSONResponse(
        status_code=status,
        headers=headers,
        content={
            "type": type_,
            "title": title,
            "status": status,
            "detail": detail,
            "request_id": getattr(request.state, "request_id", None),
            "errors": errors or [],
        },
    )


def _field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    fields = []
    for error in exc.errors():
        parts = [str(part) for part in error.get("loc", ()) if part not in IGNORED_LOCATIONS]
        fields.append({"field": ".".join(parts) or "body", "message": error.get("msg", "Invalid value")})
    return fields


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return problem_response(
        request,
        status=422,
        title="Validation Error",
        detail="Request validation failed",
        type_=PROBLEM_TYPE_VALIDATION,
        errors=_field_errors(exc),
    )


async def handle_domain_error(request: Request, exc: DomainError) -> JSONResponse:
    if isinstance(exc, (ProcessorError, SignatureError)):
        logger.warning(
            "processor_request_failed",
            extra={"extra": {"path": request.url.path, "reason": getattr(exc, "reason", None)}},
        )
    return problem_response(
        request,
        status=exc.status_code,
        title=exc.title,
        detail=exc.detail,
        type_=exc.type,
        errors=exc.errors,
    )


async def handle_http_error(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else None
    return problem_response(
        request,
        status=exc.status_code,
        title=message or "HTTP Error",
        detail=message or "Request failed",
        type_=PROBLEM_TYPE_SERVER if exc.status_code >= 500 else PROBLEM_TYPE_HTTP,
        headers=exc.headers,
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        extra={"extra": {"request_id": getattr(request.state, "request_id", None), "path": request.url.path}},
    )
    return problem_response(
        request,
        status=500,
        title="Internal Server Error",
        detail="Unexpected error",
        type_=PROBLEM_TYPE_SERVER,
    )


def register_problem_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(DomainError, handle_domain_error)
    app.add_exception_handler(HTTPException, handle_http_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
