import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.core.config import settings
from src.core.exceptions import AppException
from src.shared.schemas import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

DOCUMENT_NUMBER_CONSTRAINT = "uq_documents_number_scope"


def _respond(status_code: int, response: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=response.model_dump())


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render application errors; numbering context goes to `details`."""
    if exc.status_code >= 500:
        logger.error(
            "%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message
        )
    return _respond(
        exc.status_code,
        ErrorResponse.single(exc.message, field=exc.details.get("field"), details=exc.details),
    )


def _format_validation_errors(errors: list[dict]) -> list[ErrorDetail]:
    formatted: list[ErrorDetail] = []
    for error in errors:
        loc = error.get("loc", ())
        # Drop the "body"/"query"/"header" part of the location
        if loc and loc[0] in ("body", "query", "header", "path"):
            loc = loc[1:]
        field = ".".join(str(part) for part in loc) if loc else None
        formatted.append(ErrorDetail(field=field, message=error.get("msg", "Invalid value")))
    return formatted


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors (bad document type, malformed dates...)."""
    return _respond(
        422,
        ErrorResponse(message="Validation error", errors=_format_validation_errors(exc.errors())),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = str(exc.detail) if exc.detail else "HTTP error"
    return _respond(exc.status_code, ErrorResponse.single(message))


def _friendly_db_error(exc: Exception) -> tuple[str, str | None]:
    """
    Map database errors to a stable, user-facing message and field.

    Raw driver messages are only exposed when debug is enabled.
    """
    raw = str(getattr(exc, "orig", exc))
    lower = raw.lower()

    if "does not exist" in lower and ("column" in lower or "relation" in lower):
        return "Database schema is out of date. Run the latest migrations and try again.", None

    if DOCUMENT_NUMBER_CONSTRAINT in lower or ("unique" in lower and "documents.number" in lower):
        # A uniqueness violation escaped the retrying layers: never report it as saved.
        return "Document number was claimed concurrently. Nothing was saved, please retry.", "number"

    if settings.debug:
        return raw, None
    return "Database error", None


async def sqlalchemy_db_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path)
    message, field = _friendly_db_error(exc)
    return _respond(500, ErrorResponse.single(message, field=field))
