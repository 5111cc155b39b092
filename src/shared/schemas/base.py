from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class BaseSchema(BaseModel):
    """Base Pydantic schema; reads ORM records directly."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class ErrorDetail(BaseSchema):
    field: str | None = None
    message: str


class SuccessResponse(BaseSchema, Generic[T]):
    """Envelope of every successful API response."""

    success: bool = True
    data: T
    message: str | None = None


ApiResponse = SuccessResponse


class ErrorResponse(BaseSchema):
    """
    Envelope of every failed API response.

    `details` carries machine-readable context of numbering errors, e.g. the
    suggested next number of a manual number conflict.
    """

    success: bool = False
    data: None = None
    message: str
    errors: list[ErrorDetail] = []
    details: dict[str, Any] | None = None

    @classmethod
    def single(
        cls, message: str, field: str | None = None, details: dict[str, Any] | None = None
    ) -> "ErrorResponse":
        return cls(
            message=message,
            errors=[ErrorDetail(field=field, message=message)],
            details=details or None,
        )


class PaginatedResponse(BaseSchema, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def create(cls, items: list[T], total: int, page: int, limit: int) -> "PaginatedResponse[T]":
        pages = (total + limit - 1) // limit if limit > 0 else 0
        return cls(items=items, total=total, page=page, limit=limit, pages=pages)


class TimestampMixin(BaseSchema):
    created_at: datetime
    updated_at: datetime
