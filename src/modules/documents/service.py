"""Service layer for Documents module: creation, status changes and conversions."""

import logging
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit import AuditAction, AuditLog, create_audit_log, list_audit_entries
from src.core.config import settings
from src.core.documents.models import DocumentRecord
from src.core.documents.numbering import NumberingService, SequenceCheck
from src.core.documents.scope import ScopeKey, resolve_scope
from src.core.documents.sequence import apply_draft_marker
from src.core.documents.transitions import run_with_retry
from src.core.documents.types import (
    CANCELED_STATUS,
    DRAFT_STATUS,
    DocumentType,
    get_type_spec,
)
from src.core.exceptions import NotFoundError, ValidationError
from src.modules.documents.schemas import DocumentCreate, DocumentFilters

logger = logging.getLogger(__name__)


class DocumentService:
    """Service for managing numbered documents of a workspace."""

    def __init__(self, db: AsyncSession, numbering: NumberingService | None = None):
        self.db = db
        self.numbering = numbering or NumberingService(db)

    async def create_document(self, workspace_id: str, data: DocumentCreate) -> DocumentRecord:
        """Create a document, numbered in the draft or final namespace depending on status."""
        return await self._create(
            workspace_id,
            document_type=data.document_type,
            status=data.status,
            prefix=data.prefix,
            issue_date=data.issue_date,
            manual_number=data.number,
        )

    async def _create(
        self,
        workspace_id: str,
        document_type: DocumentType,
        status: str,
        prefix: str | None = None,
        issue_date: date | None = None,
        manual_number: str | None = None,
        source_document_id: int | None = None,
    ) -> DocumentRecord:
        spec = get_type_spec(document_type)
        if not spec.is_valid_status(status):
            raise ValidationError(
                f"Invalid status {status} for {document_type.value}", field="status"
            )
        if status == CANCELED_STATUS:
            raise ValidationError("Documents cannot be created as canceled", field="status")

        is_draft = status == DRAFT_STATUS
        issue_date = issue_date or date.today()
        scope = resolve_scope(workspace_id, document_type, prefix, issue_date, is_draft=is_draft)

        async def attempt(attempt_no: int) -> DocumentRecord:
            if is_draft:
                number = await self.numbering.allocate_draft_number(scope, manual_number)
            else:
                number = await self.numbering.allocate_final_number(scope, manual_number)

            document = DocumentRecord(
                workspace_id=scope.workspace_id,
                document_type=scope.document_type.value,
                prefix=scope.prefix,
                number=number,
                namespace=scope.namespace.value,
                issue_date=issue_date,
                issue_year=scope.issue_year,
                status=status,
                source_document_id=source_document_id,
            )
            self.db.add(document)
            await self.db.flush()

            await create_audit_log(
                self.db,
                action=AuditAction.ALLOCATE_NUMBER,
                entity_type=document.document_type,
                entity_id=document.id,
                workspace_id=document.workspace_id,
                entity_identifier=number,
                new_values={"number": number, "status": status, "namespace": document.namespace},
                comment=f"attempt {attempt_no}",
            )
            await self.db.commit()
            return document

        document = await run_with_retry(
            attempt,
            db=self.db,
            max_attempts=settings.transition_max_attempts,
            sleep=self.numbering.coordinator.sleep,
            backoff_seconds=settings.retry_backoff_seconds,
            timeout_seconds=settings.numbering_transaction_timeout_seconds,
        )
        logger.info(
            "Created %s %s%s (%s) in workspace %s",
            document.document_type,
            document.prefix,
            document.number,
            document.status,
            document.workspace_id,
        )
        return document

    async def change_status(
        self, workspace_id: str, document_id: int, status: str
    ) -> DocumentRecord:
        """
        Change status along the type's transition graph.

        The first move out of DRAFT into a finalized status allocates the final
        number; DRAFT -> CANCELED keeps the draft number.
        """
        document = await self.get_document(workspace_id, document_id)
        spec = get_type_spec(document.document_type)
        if document.status == status:
            return document
        if spec.is_terminal(document.status):
            raise ValidationError(
                f"{document.document_type} is {document.status} and can no longer change status",
                field="status",
            )
        if not spec.can_transition(document.status, status):
            allowed = ", ".join(spec.allowed_targets(document.status)) or "none"
            raise ValidationError(
                f"Cannot change {document.document_type} status from {document.status} "
                f"to {status} (allowed: {allowed})",
                field="status",
            )

        if document.status == DRAFT_STATUS and spec.is_finalized(status):
            return await self.numbering.transition_to_final(document_id, status)

        old_status = document.status
        document.status = status
        await create_audit_log(
            self.db,
            action=AuditAction.CHANGE_STATUS,
            entity_type=document.document_type,
            entity_id=document.id,
            workspace_id=document.workspace_id,
            entity_identifier=document.number,
            old_values={"status": old_status},
            new_values={"status": status},
        )
        await self.db.commit()
        return document

    async def convert_document(
        self, workspace_id: str, source_id: int, target_type: DocumentType
    ) -> DocumentRecord:
        """Create a new draft of `target_type` from an accepted source document."""
        source = await self.get_document(workspace_id, source_id)
        spec = get_type_spec(source.document_type)
        required_status = spec.convertible_to.get(target_type)
        if required_status is None:
            raise ValidationError(
                f"{source.document_type} cannot be converted to {target_type.value}",
                field="target_type",
            )
        if source.status != required_status:
            raise ValidationError(
                f"Only {required_status} {source.document_type} documents can be converted",
                field="status",
            )

        converted = await self._create(
            workspace_id,
            document_type=target_type,
            status=DRAFT_STATUS,
            source_document_id=source_id,
        )
        await create_audit_log(
            self.db,
            action=AuditAction.CONVERT,
            entity_type=converted.document_type,
            entity_id=converted.id,
            workspace_id=converted.workspace_id,
            entity_identifier=converted.number,
            old_values={"source_document_id": source_id},
            new_values={"document_type": target_type.value},
        )
        await self.db.commit()
        return converted

    async def get_document(self, workspace_id: str, document_id: int) -> DocumentRecord:
        result = await self.db.execute(
            select(DocumentRecord).where(
                DocumentRecord.id == document_id,
                DocumentRecord.workspace_id == workspace_id,
            )
        )
        document = result.scalar_one_or_none()
        if not document:
            raise NotFoundError("Document", document_id)
        return document

    async def list_document_audit(
        self, workspace_id: str, document_id: int, page: int = 1, limit: int = 50
    ) -> tuple[list[AuditLog], int]:
        """Number and status history of a document, newest first."""
        document = await self.get_document(workspace_id, document_id)
        return await list_audit_entries(
            self.db,
            workspace_id=workspace_id,
            entity_id=document.id,
            page=page,
            limit=limit,
        )

    async def list_documents(
        self, workspace_id: str, filters: DocumentFilters
    ) -> tuple[list[DocumentRecord], int]:
        query = select(DocumentRecord).where(DocumentRecord.workspace_id == workspace_id)
        if filters.document_type:
            query = query.where(DocumentRecord.document_type == filters.document_type.value)
        if filters.status:
            query = query.where(DocumentRecord.status == filters.status)
        if filters.namespace:
            query = query.where(DocumentRecord.namespace == filters.namespace.value)
        if filters.issue_year:
            query = query.where(DocumentRecord.issue_year == filters.issue_year)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        query = (
            query.order_by(DocumentRecord.created_at.desc(), DocumentRecord.id.desc())
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), int(total or 0)

    async def preview_next_number(
        self,
        workspace_id: str,
        document_type: DocumentType,
        prefix: str | None = None,
        issue_date: date | None = None,
        is_draft: bool = False,
    ) -> tuple[ScopeKey, str]:
        scope = resolve_scope(workspace_id, document_type, prefix, issue_date, is_draft=is_draft)
        return scope, await self.numbering.peek_next_number(scope)

    async def validate_number(
        self,
        workspace_id: str,
        document_type: DocumentType,
        number: str,
        prefix: str | None = None,
        issue_date: date | None = None,
        is_draft: bool = False,
    ) -> SequenceCheck:
        scope = resolve_scope(workspace_id, document_type, prefix, issue_date, is_draft=is_draft)
        try:
            normalized = self.numbering.normalize_manual_number(number)
        except ValidationError as exc:
            return SequenceCheck(is_valid=False, message=exc.message)
        if is_draft:
            normalized = apply_draft_marker(normalized, scope)
        return await self.numbering.validate_number_sequence(scope, normalized)
