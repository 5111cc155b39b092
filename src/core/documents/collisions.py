"""
Collision detection and rename-based recovery.

Draft namespace: the newest claimant keeps the number, older holders are moved
to `DRAFT-<digits>-<disambiguator>`. Final namespace: finalized documents are
never moved, the candidate is rejected and the caller recomputes.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit import AuditAction, create_audit_log
from src.core.config import settings
from src.core.documents.models import DocumentRecord
from src.core.documents.scope import ScopeKey
from src.core.documents.sequence import apply_draft_marker, scope_conditions, strip_draft_markers
from src.core.documents.types import NumberNamespace
from src.core.exceptions import FinalNumberTakenError, NumberingExhaustedError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    accepted_number: str
    renamed: list[DocumentRecord] = field(default_factory=list)


class CollisionRenamer:
    """Checks a number against its scope and relocates conflicting drafts."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], int] | None = None,
        max_attempts: int | None = None,
    ):
        self.db = db
        self.clock = clock or time.time_ns
        self.max_attempts = (
            settings.disambiguation_max_attempts if max_attempts is None else max_attempts
        )
        self._last_disambiguator = 0

    async def find_holders(
        self, scope: ScopeKey, number: str, exclude_id: int | None = None
    ) -> list[DocumentRecord]:
        """Records of the scope holding `number`, newest first."""
        stmt = (
            select(DocumentRecord)
            .where(*scope_conditions(scope), DocumentRecord.number == number)
            .order_by(DocumentRecord.created_at.desc(), DocumentRecord.id.desc())
        )
        if exclude_id is not None:
            stmt = stmt.where(DocumentRecord.id != exclude_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def is_taken(self, scope: ScopeKey, number: str, exclude_id: int | None = None) -> bool:
        stmt = select(DocumentRecord.id).where(
            *scope_conditions(scope), DocumentRecord.number == number
        )
        if exclude_id is not None:
            stmt = stmt.where(DocumentRecord.id != exclude_id)
        result = await self.db.execute(stmt.limit(1))
        return result.first() is not None

    async def reconcile(
        self, scope: ScopeKey, candidate_number: str, new_record_id: int | None = None
    ) -> ReconcileResult:
        """
        Make `candidate_number` available to the requesting record.

        Returns the accepted number and the records that were relocated to free it.
        Raises FinalNumberTakenError when a finalized document already holds it.
        """
        holders = await self.find_holders(scope, candidate_number, exclude_id=new_record_id)
        if not holders:
            return ReconcileResult(accepted_number=candidate_number)

        if scope.namespace == NumberNamespace.FINAL:
            logger.info(
                "Final number %s%s already held by document %s in workspace %s",
                scope.prefix,
                candidate_number,
                holders[0].id,
                scope.workspace_id,
            )
            raise FinalNumberTakenError(candidate_number)
        if scope.namespace != NumberNamespace.DRAFT:
            raise ValueError(f"Cannot reconcile numbers in the {scope.namespace} namespace")

        renamed = await self._relocate(
            scope,
            candidate_number,
            holders,
            action=AuditAction.RENAME_NUMBER,
            comment=f"Number {candidate_number} claimed by a newer draft",
        )
        return ReconcileResult(accepted_number=candidate_number, renamed=renamed)

    async def heal_duplicates(self, scope: ScopeKey, number: str) -> list[DocumentRecord]:
        """
        Repair several records already sharing `number`: the most recently created
        keeps it, the others are relocated. Final duplicates are only reported.
        """
        holders = await self.find_holders(scope, number)
        if len(holders) < 2:
            return []
        if scope.namespace != NumberNamespace.DRAFT:
            logger.error(
                "Finalized documents %s share number %s%s in workspace %s; manual review required",
                [h.id for h in holders],
                scope.prefix,
                number,
                scope.workspace_id,
            )
            return []

        keep, *others = holders
        logger.warning(
            "Healing %d duplicate drafts of %s in workspace %s, keeping document %s",
            len(others),
            number,
            scope.workspace_id,
            keep.id,
        )
        return await self._relocate(
            scope,
            number,
            others,
            action=AuditAction.REPAIR_NUMBER,
            comment=f"Duplicate of {number}, document {keep.id} kept it",
        )

    def _next_disambiguator(self) -> int:
        value = self.clock()
        if value <= self._last_disambiguator:
            value = self._last_disambiguator + 1
        self._last_disambiguator = value
        return value

    async def free_target(
        self, scope: ScopeKey, base: str, claimed: set[str] | None = None
    ) -> str:
        """First `{base}-{disambiguator}` free in the scope and not in `claimed`."""
        claimed = claimed or set()
        for _ in range(self.max_attempts):
            target = f"{base}-{self._next_disambiguator()}"
            if target in claimed:
                continue
            if not await self.is_taken(scope, target):
                return target
        logger.error(
            "Disambiguation of %s did not converge in workspace %s after %d attempts",
            base,
            scope.workspace_id,
            self.max_attempts,
        )
        raise NumberingExhaustedError(base, self.max_attempts)

    async def _relocate(
        self,
        scope: ScopeKey,
        number: str,
        records: list[DocumentRecord],
        action: AuditAction,
        comment: str,
    ) -> list[DocumentRecord]:
        # Reuse the digits only; the marker is applied once, never stacked.
        base = apply_draft_marker(strip_draft_markers(number), scope)
        claimed: set[str] = set()
        for record in records:
            target = await self.free_target(scope, base, claimed)
            claimed.add(target)
            old_number = record.number
            record.number = target
            await create_audit_log(
                self.db,
                action=action,
                entity_type=record.document_type,
                entity_id=record.id,
                workspace_id=record.workspace_id,
                entity_identifier=target,
                old_values={"number": old_number},
                new_values={"number": target},
                comment=comment,
            )
            logger.warning(
                "Relocated document %s from %s to %s in workspace %s",
                record.id,
                old_number,
                target,
                record.workspace_id,
            )
        await self.db.flush()
        return records
