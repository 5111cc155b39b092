import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit import AuditAction, create_audit_log
from src.core.config import settings
from src.core.documents.collisions import CollisionRenamer
from src.core.documents.models import DocumentRecord
from src.core.documents.scope import ScopeKey, scope_for_record
from src.core.documents.sequence import (
    SequenceComputer,
    apply_draft_marker,
    format_sequence,
    parse_sequence,
    strip_draft_markers,
)
from src.core.documents.transitions import Sleep, TransitionCoordinator
from src.core.documents.types import DocumentType, NumberNamespace
from src.core.exceptions import (
    ConcurrentNumberingConflictError,
    FinalNumberTakenError,
    ManualNumberConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class SequenceCheck:
    is_valid: bool
    message: str | None = None
    expected: str | None = None
    taken: bool = False


@dataclass
class DuplicateGroup:
    scope: ScopeKey
    number: str
    count: int


@dataclass
class RepairReport:
    duplicate_groups: list[DuplicateGroup] = field(default_factory=list)
    stacked_drafts: list[int] = field(default_factory=list)
    # (document id, old number, new number)
    renamed: list[tuple[int, str, str]] = field(default_factory=list)
    final_duplicates: list[DuplicateGroup] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (self.duplicate_groups or self.stacked_drafts)


class NumberingService:
    """
    Entry point of the numbering engine used by the document workflows.

    Allocation returns a number without persisting the document: the caller
    inserts it, and the unique index rejects a number claimed in between.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Callable[[], int] | None = None,
        sleep: Sleep | None = None,
        sequence: SequenceComputer | None = None,
    ):
        self.db = db
        self.sequence = sequence or SequenceComputer(db)
        self.renamer = CollisionRenamer(db, clock=clock)
        self.coordinator = TransitionCoordinator(
            db, sequence=self.sequence, clock=clock, sleep=sleep
        )

    @staticmethod
    def normalize_manual_number(manual_number: str) -> str:
        """Bare zero-padded digits of a user supplied number, any draft marker removed."""
        value = strip_draft_markers(manual_number.strip())
        parsed = parse_sequence(value, NumberNamespace.FINAL)
        if parsed is None:
            raise ValidationError("Document number must contain digits only", field="number")
        number, width = parsed
        return format_sequence(number, width)

    async def allocate_draft_number(
        self,
        scope: ScopeKey,
        manual_number: str | None = None,
        new_record_id: int | None = None,
    ) -> str:
        """
        Draft number for a new (or re-numbered) draft.

        A manual number wins over an existing draft holding it: the older draft
        is relocated to DRAFT-<digits>-<disambiguator>. A computed number that
        another writer claimed meanwhile is recomputed instead.
        """
        if scope.namespace != NumberNamespace.DRAFT:
            raise ValueError("allocate_draft_number requires a draft scope")

        if not manual_number:
            return await self._next_free_draft_number(scope, new_record_id)

        candidate = apply_draft_marker(self.normalize_manual_number(manual_number), scope)
        result = await self.renamer.reconcile(scope, candidate, new_record_id=new_record_id)
        if result.renamed:
            logger.info(
                "Draft number %s claimed in workspace %s, %d older draft(s) relocated",
                candidate,
                scope.workspace_id,
                len(result.renamed),
            )
        return result.accepted_number

    async def _next_free_draft_number(
        self, scope: ScopeKey, new_record_id: int | None = None
    ) -> str:
        max_attempts = settings.transition_max_attempts
        for attempt in range(1, max_attempts + 1):
            candidate = await self.sequence.next_number(scope)
            if not await self.renamer.is_taken(scope, candidate, exclude_id=new_record_id):
                return candidate
            logger.warning(
                "Draft number %s taken in workspace %s, recomputing (%d/%d)",
                candidate,
                scope.workspace_id,
                attempt,
                max_attempts,
            )
        raise ConcurrentNumberingConflictError(max_attempts)

    async def allocate_final_number(
        self, scope: ScopeKey, manual_number: str | None = None
    ) -> str:
        """
        Final number for a document created directly in a finalized status.

        A manual number is accepted only when it keeps the sequence intact
        (free choice while the scope has no final numbers yet).
        """
        if scope.namespace != NumberNamespace.FINAL:
            raise ValueError("allocate_final_number requires a final scope")

        if manual_number:
            candidate = self.normalize_manual_number(manual_number)
            check = await self.validate_number_sequence(scope, candidate)
            if check.taken:
                raise ManualNumberConflictError(candidate, check.expected)
            if not check.is_valid:
                raise ValidationError(check.message or "Invalid document number", field="number")
            return candidate

        max_attempts = settings.transition_max_attempts
        for attempt in range(1, max_attempts + 1):
            candidate = await self.sequence.next_number(scope)
            try:
                result = await self.renamer.reconcile(scope, candidate)
            except FinalNumberTakenError:
                logger.warning(
                    "Final number %s taken in workspace %s, recomputing (%d/%d)",
                    candidate,
                    scope.workspace_id,
                    attempt,
                    max_attempts,
                )
                continue
            return result.accepted_number
        raise ConcurrentNumberingConflictError(max_attempts)

    async def peek_next_number(self, scope: ScopeKey) -> str:
        """Preview of the next number; nothing is reserved."""
        return await self.sequence.next_number(scope)

    async def transition_to_final(
        self, record: DocumentRecord | int, target_status: str
    ) -> DocumentRecord:
        return await self.coordinator.transition_to_final(record, target_status)

    async def validate_number_sequence(self, scope: ScopeKey, number: str) -> SequenceCheck:
        """
        Check a manual final number: unused, and equal to max + 1 once the scope
        has final numbers. Drafts are not sequence-checked.
        """
        if scope.namespace == NumberNamespace.DRAFT:
            return SequenceCheck(is_valid=True)

        current = await self.sequence.current_max(scope)
        expected = format_sequence(current[0] + 1, current[1]) if current else format_sequence(1)

        if await self.renamer.is_taken(scope, number):
            return SequenceCheck(
                is_valid=False,
                message=f"Document number {number} is already used",
                expected=expected,
                taken=True,
            )
        if current is None:
            return SequenceCheck(is_valid=True, expected=expected)

        parsed = parse_sequence(number, NumberNamespace.FINAL)
        if parsed is None:
            return SequenceCheck(
                is_valid=False, message="Document number must contain digits only", expected=expected
            )
        highest = current[0]
        if parsed[0] <= highest:
            return SequenceCheck(
                is_valid=False,
                message=f"Document number must be greater than {format_sequence(highest, current[1])}",
                expected=expected,
            )
        if parsed[0] > highest + 1:
            return SequenceCheck(
                is_valid=False,
                message=f"Document number must be {expected} to keep the sequence",
                expected=expected,
            )
        return SequenceCheck(is_valid=True, expected=expected)

    async def find_duplicate_groups(self, workspace_id: str | None = None) -> list[DuplicateGroup]:
        """Numbers held by more than one document of the same scope."""
        stmt = (
            select(
                DocumentRecord.workspace_id,
                DocumentRecord.document_type,
                DocumentRecord.prefix,
                DocumentRecord.issue_year,
                DocumentRecord.namespace,
                DocumentRecord.number,
                func.count().label("count"),
            )
            .where(DocumentRecord.number.is_not(None))
            .group_by(
                DocumentRecord.workspace_id,
                DocumentRecord.document_type,
                DocumentRecord.prefix,
                DocumentRecord.issue_year,
                DocumentRecord.namespace,
                DocumentRecord.number,
            )
            .having(func.count() > 1)
        )
        if workspace_id is not None:
            stmt = stmt.where(DocumentRecord.workspace_id == workspace_id)
        result = await self.db.execute(stmt)
        return [
            DuplicateGroup(
                scope=ScopeKey(
                    workspace_id=row.workspace_id,
                    document_type=DocumentType(row.document_type),
                    prefix=row.prefix,
                    issue_year=row.issue_year,
                    namespace=NumberNamespace(row.namespace),
                ),
                number=row.number,
                count=row.count,
            )
            for row in result.all()
        ]

    async def find_stacked_drafts(self, workspace_id: str | None = None) -> list[DocumentRecord]:
        """Drafts whose number carries the draft marker more than once."""
        marker = settings.draft_marker
        stmt = select(DocumentRecord).where(
            DocumentRecord.namespace == NumberNamespace.DRAFT.value,
            DocumentRecord.number.startswith(marker + marker, autoescape=True),
        )
        if workspace_id is not None:
            stmt = stmt.where(DocumentRecord.workspace_id == workspace_id)
        result = await self.db.execute(stmt.order_by(DocumentRecord.id))
        return list(result.scalars().all())

    async def repair(self, workspace_id: str | None = None, dry_run: bool = True) -> RepairReport:
        """
        Heal numbering damage left by older code paths: stacked draft markers
        and drafts sharing a number. Finalized duplicates are only reported.
        """
        report = RepairReport()
        stacked = await self.find_stacked_drafts(workspace_id)
        report.stacked_drafts = [record.id for record in stacked]
        groups = await self.find_duplicate_groups(workspace_id)
        report.duplicate_groups = [g for g in groups if g.scope.namespace == NumberNamespace.DRAFT]
        report.final_duplicates = [g for g in groups if g.scope.namespace != NumberNamespace.DRAFT]

        for group in report.final_duplicates:
            logger.error(
                "Finalized number %s%s is held by %d documents in workspace %s",
                group.scope.prefix,
                group.number,
                group.count,
                group.scope.workspace_id,
            )

        if dry_run:
            return report

        for record in stacked:
            old_number = record.number
            new_number = await self._normalize_stacked(record)
            report.renamed.append((record.id, old_number, new_number))

        # Stacked fixes can create new duplicates, look again.
        for group in await self.find_duplicate_groups(workspace_id):
            if group.scope.namespace != NumberNamespace.DRAFT:
                continue
            for record in await self.renamer.heal_duplicates(group.scope, group.number):
                report.renamed.append((record.id, group.number, record.number))

        await self.db.commit()
        logger.info("Numbering repair renamed %d document(s)", len(report.renamed))
        return report

    async def _normalize_stacked(self, record: DocumentRecord) -> str:
        scope = scope_for_record(record, NumberNamespace.DRAFT)
        target = apply_draft_marker(strip_draft_markers(record.number), scope)
        if await self.renamer.is_taken(scope, target, exclude_id=record.id):
            # Leave the clean number to its current holder.
            target = await self.renamer.free_target(scope, target)
        old_number = record.number
        record.number = target
        await create_audit_log(
            self.db,
            action=AuditAction.REPAIR_NUMBER,
            entity_type=record.document_type,
            entity_id=record.id,
            workspace_id=record.workspace_id,
            entity_identifier=target,
            old_values={"number": old_number},
            new_values={"number": target},
            comment="Stacked draft marker removed",
        )
        return target
