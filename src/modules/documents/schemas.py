"""Schemas for Documents module (numbered business documents)."""

from datetime import date, datetime

from pydantic import Field, field_validator

from src.core.documents.types import DocumentType, NumberNamespace
from src.shared.schemas import BaseSchema, TimestampMixin


class DocumentCreate(BaseSchema):
    """Schema for creating a document (draft by default)."""

    document_type: DocumentType
    status: str = Field("DRAFT", min_length=1, max_length=30)
    prefix: str | None = Field(None, max_length=10)
    issue_date: date | None = None
    # Manual number; drafts get it wrapped as DRAFT-<number>
    number: str | None = Field(None, min_length=1, max_length=20)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class DocumentStatusUpdate(BaseSchema):
    """Schema for changing a document status."""

    status: str = Field(..., min_length=1, max_length=30)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class DocumentConvertRequest(BaseSchema):
    """Schema for converting a document into another type (e.g. quote -> invoice)."""

    target_type: DocumentType


class DocumentFilters(BaseSchema):
    """Filters for listing documents."""

    document_type: DocumentType | None = None
    status: str | None = None
    namespace: NumberNamespace | None = None
    issue_year: int | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class DocumentResponse(TimestampMixin):
    """Schema for document response."""

    id: int
    workspace_id: str
    document_type: str
    prefix: str
    number: str | None
    namespace: str
    issue_date: date
    issue_year: int
    status: str
    source_document_id: int | None


class NextNumberResponse(BaseSchema):
    """Preview of the next number of a scope."""

    document_type: str
    prefix: str
    issue_year: int
    namespace: str
    next_number: str


class NumberValidationRequest(BaseSchema):
    """Schema for checking a manual number before submitting it."""

    document_type: DocumentType
    number: str = Field(..., min_length=1, max_length=20)
    prefix: str | None = Field(None, max_length=10)
    issue_date: date | None = None
    is_draft: bool = False


class NumberValidationResponse(BaseSchema):
    is_valid: bool
    message: str | None = None
    expected: str | None = None


class AuditEntryResponse(BaseSchema):
    """Single audit log entry of a document's number history."""

    id: int
    action: str
    entity_type: str
    entity_id: int
    entity_identifier: str | None
    old_values: dict | None
    new_values: dict | None
    comment: str | None
    created_at: datetime
