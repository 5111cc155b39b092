"""API endpoints for Documents module."""

from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.session import get_db
from src.core.documents.types import DocumentType, NumberNamespace
from src.core.exceptions import InvalidScopeError
from src.modules.documents.schemas import (
    AuditEntryResponse,
    DocumentConvertRequest,
    DocumentCreate,
    DocumentFilters,
    DocumentResponse,
    DocumentStatusUpdate,
    NextNumberResponse,
    NumberValidationRequest,
    NumberValidationResponse,
)
from src.modules.documents.service import DocumentService
from src.shared.schemas import ApiResponse, PaginatedResponse

router = APIRouter(tags=["Documents"])


async def get_workspace_id(
    x_workspace_id: Annotated[str | None, Header()] = None,
) -> str:
    """Tenant of the request, taken from the X-Workspace-Id header."""
    if not x_workspace_id or not x_workspace_id.strip():
        raise InvalidScopeError("X-Workspace-Id header required", field="workspace_id")
    return x_workspace_id.strip()


def _doc_to_response(document) -> DocumentResponse:
    return DocumentResponse.model_validate(document)


# --- Documents ---


@router.post(
    "/documents",
    response_model=ApiResponse[DocumentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_document(
    data: DocumentCreate,
    db: AsyncSession = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
):
    """Create a document. DRAFT documents get a draft number, others a final one."""
    service = DocumentService(db)
    document = await service.create_document(workspace_id, data)
    return ApiResponse(
        success=True,
        message="Document created successfully",
        data=_doc_to_response(document),
    )


@router.get(
    "/documents",
    response_model=ApiResponse[PaginatedResponse[DocumentResponse]],
)
async def list_documents(
    document_type: DocumentType | None = Query(None),
    status: str | None = Query(None),
    namespace: NumberNamespace | None = Query(None),
    issue_year: int | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
):
    """List documents of the workspace, newest first."""
    service = DocumentService(db)
    filters = DocumentFilters(
        document_type=document_type,
        status=status,
        namespace=namespace,
        issue_year=issue_year,
        page=page,
        limit=limit,
    )
    documents, total = await service.list_documents(workspace_id, filters)
    return ApiResponse(
        success=True,
        data=PaginatedResponse.create(
            items=[_doc_to_response(d) for d in documents],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get(
    "/documents/{document_id}",
    response_model=ApiResponse[DocumentResponse],
)
async def get_document(
    document_id: int,
    db: AsyncSession = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
):
    service = DocumentService(db)
    document = await service.get_document(workspace_id, document_id)
    return ApiResponse(success=True, data=_doc_to_response(document))


@router.post(
    "/documents/{document_id}/status",
    response_model=ApiResponse[DocumentResponse],
)
async def change_document_status(
    document_id: int,
    data: DocumentStatusUpdate,
    db: AsyncSession = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
):
    """
    Change document status.

    Leaving DRAFT for a finalized status assigns the next final number.
    """
    service = DocumentService(db)
    document = await service.change_status(workspace_id, document_id, data.status)
    return ApiResponse(
        success=True,
        message=f"Document status changed to {document.status}",
        data=_doc_to_response(document),
    )


@router.post(
    "/documents/{document_id}/convert",
    response_model=ApiResponse[DocumentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def convert_document(
    document_id: int,
    data: DocumentConvertRequest,
    db: AsyncSession = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
):
    """Convert an accepted document into a new draft of another type."""
    service = DocumentService(db)
    document = await service.convert_document(workspace_id, document_id, data.target_type)
    return ApiResponse(
        success=True,
        message="Document converted successfully",
        data=_doc_to_response(document),
    )


@router.get(
    "/documents/{document_id}/audit",
    response_model=ApiResponse[PaginatedResponse[AuditEntryResponse]],
)
async def get_document_audit(
    document_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
):
    """Number and status history of a document (allocations, relocations, finalization)."""
    service = DocumentService(db)
    entries, total = await service.list_document_audit(workspace_id, document_id, page, limit)
    return ApiResponse(
        success=True,
        data=PaginatedResponse.create(
            items=[AuditEntryResponse.model_validate(e) for e in entries],
            total=total,
            page=page,
            limit=limit,
        ),
    )


# --- Numbering ---


@router.get(
    "/numbering/next",
    response_model=ApiResponse[NextNumberResponse],
)
async def get_next_number(
    document_type: DocumentType = Query(...),
    prefix: str | None = Query(None, max_length=10),
    issue_date: date | None = Query(None),
    is_draft: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
):
    """Preview the next number of a scope. Nothing is reserved."""
    service = DocumentService(db)
    scope, next_number = await service.preview_next_number(
        workspace_id, document_type, prefix, issue_date, is_draft
    )
    return ApiResponse(
        success=True,
        data=NextNumberResponse(
            document_type=scope.document_type.value,
            prefix=scope.prefix,
            issue_year=scope.issue_year,
            namespace=scope.namespace.value,
            next_number=next_number,
        ),
    )


@router.post(
    "/numbering/validate",
    response_model=ApiResponse[NumberValidationResponse],
)
async def validate_number(
    data: NumberValidationRequest,
    db: AsyncSession = Depends(get_db),
    workspace_id: str = Depends(get_workspace_id),
):
    service = DocumentService(db)
    check = await service.validate_number(
        workspace_id,
        data.document_type,
        data.number,
        data.prefix,
        data.issue_date,
        data.is_draft,
    )
    return ApiResponse(
        success=True,
        data=NumberValidationResponse(
            is_valid=check.is_valid,
            message=check.message,
            expected=check.expected,
        ),
    )
