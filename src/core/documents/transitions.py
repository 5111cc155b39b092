"""
Draft -> final transition protocol.

Each attempt runs in its own transaction: vacate the draft slot with a
placeholder, compute the next final number from a fresh read, write it with the
new status and commit. The unique index decides between concurrent writers; a
violation (or a timeout) rolls the attempt back and the next attempt recomputes.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit import AuditAction, create_audit_log
from src.core.config import settings
from src.core.documents.models import DocumentRecord
from src.core.documents.scope import scope_for_record
from src.core.documents.sequence import SequenceComputer
from src.core.documents.types import DRAFT_STATUS, NumberNamespace, get_type_spec
from src.core.exceptions import (
    ConcurrentNumberingConflictError,
    FinalNumberTakenError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

# Failures that abort an attempt and are retried with a freshly computed number
RETRYABLE_ERRORS = (IntegrityError, FinalNumberTakenError, TimeoutError, PoolTimeoutError)


async def run_with_retry(
    operation: Callable[[int], Awaitable[T]],
    *,
    db: AsyncSession,
    max_attempts: int,
    sleep: Sleep = asyncio.sleep,
    backoff_seconds: float = 0.0,
    timeout_seconds: float | None = None,
    document_id: int | None = None,
) -> T:
    """
    Run `operation(attempt)` until it succeeds, at most `max_attempts` times.

    Every failed attempt is rolled back before the next one starts. The delay
    between attempts grows linearly and goes through `sleep`, so tests can
    record it instead of waiting.
    """
    last_error: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            async with asyncio.timeout(timeout_seconds):
                return await operation(attempt)
        except RETRYABLE_ERRORS as exc:
            last_error = exc
            await db.rollback()
            if attempt == max_attempts:
                break
            logger.warning(
                "Numbering attempt %d/%d failed for document %s (%s), retrying",
                attempt,
                max_attempts,
                document_id,
                type(exc).__name__,
            )
            await sleep(backoff_seconds * attempt)

    logger.error(
        "Numbering gave up after %d attempts for document %s", max_attempts, document_id
    )
    raise ConcurrentNumberingConflictError(max_attempts, document_id) from last_error


class TransitionCoordinator:
    """Moves a draft document to its final number on the first move out of DRAFT."""

    def __init__(
        self,
        db: AsyncSession,
        sequence: SequenceComputer | None = None,
        clock: Callable[[], int] | None = None,
        sleep: Sleep | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        timeout_seconds: float | None = None,
    ):
        self.db = db
        self.sequence = sequence or SequenceComputer(db)
        self.clock = clock or time.time_ns
        self.sleep = sleep or asyncio.sleep
        self.max_attempts = (
            settings.transition_max_attempts if max_attempts is None else max_attempts
        )
        self.backoff_seconds = (
            settings.retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.timeout_seconds = (
            settings.numbering_transaction_timeout_seconds
            if timeout_seconds is None
            else timeout_seconds
        )

    def placeholder_for(self, record_id: int) -> str:
        return f"{settings.placeholder_marker}{self.clock()}-{record_id}"

    async def _load(self, record_id: int, lock: bool = False) -> DocumentRecord:
        record = await self.db.get(
            DocumentRecord, record_id, populate_existing=True, with_for_update=lock
        )
        if record is None:
            raise NotFoundError("Document", record_id)
        return record

    @staticmethod
    def _left_draft(record: DocumentRecord) -> DocumentRecord:
        if get_type_spec(record.document_type).is_finalized(record.status):
            return record
        raise ValidationError(
            f"{record.document_type} is {record.status} and can no longer be finalized",
            field="status",
        )

    async def transition_to_final(
        self, record: DocumentRecord | int, target_status: str
    ) -> DocumentRecord:
        """
        Give a draft its final sequential number and move it to `target_status`.

        No-op for documents already finalized: the record is returned as is. A
        document canceled meanwhile raises ValidationError.
        Raises ConcurrentNumberingConflictError when every attempt lost the race.
        """
        record_id = record if isinstance(record, int) else record.id
        current = await self._load(record_id)
        if current.status != DRAFT_STATUS:
            return self._left_draft(current)

        spec = get_type_spec(current.document_type)
        if not spec.is_finalized(target_status) or not spec.can_transition(
            DRAFT_STATUS, target_status
        ):
            raise ValidationError(
                f"Cannot finalize {current.document_type} into status {target_status}",
                field="status",
            )

        async def attempt(attempt_no: int) -> DocumentRecord:
            return await self._attempt(record_id, target_status, attempt_no)

        return await run_with_retry(
            attempt,
            db=self.db,
            max_attempts=self.max_attempts,
            sleep=self.sleep,
            backoff_seconds=self.backoff_seconds,
            timeout_seconds=self.timeout_seconds,
            document_id=record_id,
        )

    async def _attempt(self, record_id: int, target_status: str, attempt_no: int) -> DocumentRecord:
        record = await self._load(record_id, lock=True)
        if record.status != DRAFT_STATUS:
            # Finalized or canceled by a concurrent request meanwhile.
            return self._left_draft(record)

        final_scope = scope_for_record(record, NumberNamespace.FINAL)
        draft_number = record.number

        # Vacate the draft slot; the placeholder has its own uniqueness domain.
        record.number = self.placeholder_for(record_id)
        record.namespace = NumberNamespace.PLACEHOLDER.value
        await self.db.flush()

        number = await self.sequence.next_number(final_scope, exclude_statuses={DRAFT_STATUS})

        record.number = number
        record.namespace = NumberNamespace.FINAL.value
        record.status = target_status
        await self.db.flush()

        await create_audit_log(
            self.db,
            action=AuditAction.FINALIZE_NUMBER,
            entity_type=record.document_type,
            entity_id=record_id,
            workspace_id=record.workspace_id,
            entity_identifier=number,
            old_values={"number": draft_number, "status": DRAFT_STATUS},
            new_values={"number": number, "status": target_status},
            comment=f"attempt {attempt_no}",
        )
        await self.db.commit()

        logger.info(
            "Document %s finalized as %s%s (%s) in workspace %s on attempt %d",
            record_id,
            final_scope.prefix,
            number,
            target_status,
            final_scope.workspace_id,
            attempt_no,
        )
        return record
