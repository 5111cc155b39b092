from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404)


class ValidationError(AppException):
    """Validation error."""

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, status_code=422, details=details)


class InvalidScopeError(AppException):
    """Numbering scope cannot be derived from the request (missing workspace/type)."""

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, status_code=400, details=details)


class ManualNumberConflictError(AppException):
    """A manually supplied number is already held by another document."""

    def __init__(self, number: str, suggested_number: str | None = None):
        message = f"Document number {number} is already used"
        if suggested_number:
            message = f"{message}; next available number is {suggested_number}"
        super().__init__(
            message=message,
            status_code=409,
            details={"field": "number", "value": number, "suggested_number": suggested_number},
        )


class FinalNumberTakenError(AppException):
    """A computed final number was claimed by another document; recompute and retry."""

    def __init__(self, number: str):
        super().__init__(
            message=f"Final number {number} is already taken",
            status_code=409,
            details={"field": "number", "value": number},
        )
        self.number = number


class ConcurrentNumberingConflictError(AppException):
    """Retry budget exhausted while competing for a number. Safe to retry."""

    def __init__(self, attempts: int, document_id: int | None = None):
        message = f"Could not allocate a document number after {attempts} attempts, please retry"
        super().__init__(
            message=message,
            status_code=409,
            details={"attempts": attempts, "document_id": document_id},
        )


class NumberingExhaustedError(AppException):
    """Disambiguation of a conflicting number did not converge."""

    def __init__(self, number: str, attempts: int):
        super().__init__(
            message=f"Could not find a free disambiguated number for {number} after {attempts} attempts",
            status_code=500,
            details={"field": "number", "value": number, "attempts": attempts},
        )
