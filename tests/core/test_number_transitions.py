import re
from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit import AuditAction, AuditLog
from src.core.documents import DocumentRecord, DocumentType, NumberNamespace, resolve_scope
from src.core.documents.numbering import NumberingService
from src.core.documents.sequence import SequenceComputer
from src.core.documents.transitions import TransitionCoordinator, run_with_retry
from src.core.exceptions import (
    ConcurrentNumberingConflictError,
    FinalNumberTakenError,
    ValidationError,
)


class StaleSequence(SequenceComputer):
    """Returns queued final numbers first, as a reader that missed a concurrent commit would."""

    def __init__(self, db: AsyncSession, stale_numbers: list[str]):
        super().__init__(db)
        self.stale_numbers = list(stale_numbers)
        self.calls = 0

    async def next_number(self, scope, exclude_statuses=frozenset()):
        self.calls += 1
        if self.stale_numbers and scope.namespace == NumberNamespace.FINAL:
            return self.stale_numbers.pop(0)
        return await super().next_number(scope, exclude_statuses)


class CancelingCoordinator(TransitionCoordinator):
    """Sees the document canceled by another request once the row is locked."""

    async def _load(self, record_id: int, lock: bool = False) -> DocumentRecord:
        record = await super()._load(record_id, lock)
        if lock:
            record.status = "CANCELED"
        return record


@pytest.fixture
def order_scope():
    return resolve_scope(
        "W1", DocumentType.PURCHASE_ORDER, issue_date=date(2025, 1, 10), is_draft=True
    )


async def _reload(db: AsyncSession, record_id: int) -> DocumentRecord:
    return await db.get(DocumentRecord, record_id, populate_existing=True)


class TestTransitionToFinal:
    """Tests for the draft to final transition."""

    async def test_draft_gets_first_final_number(
        self, db_session: AsyncSession, make_document, order_scope, sleep_recorder
    ):
        draft = await make_document(order_scope, "DRAFT-000007")
        await db_session.commit()
        service = NumberingService(db_session, sleep=sleep_recorder)

        record = await service.transition_to_final(draft.id, "CONFIRMED")

        assert record.number == "000001"
        assert record.namespace == NumberNamespace.FINAL.value
        assert record.status == "CONFIRMED"
        assert record.prefix == "BC-202501"
        assert sleep_recorder.calls == []

    async def test_two_orders_get_distinct_numbers(
        self, db_session: AsyncSession, make_document, order_scope, sleep_recorder
    ):
        first = await make_document(order_scope, "DRAFT-000001")
        second = await make_document(order_scope, "DRAFT-000002")
        first_id, second_id = first.id, second.id
        await db_session.commit()
        service = NumberingService(db_session, sleep=sleep_recorder)

        await service.transition_to_final(first_id, "CONFIRMED")
        await service.transition_to_final(second_id, "CONFIRMED")

        first = await _reload(db_session, first_id)
        second = await _reload(db_session, second_id)
        assert {first.number, second.number} == {"000001", "000002"}
        assert sleep_recorder.calls == []

    async def test_stale_read_retries_once(
        self, db_session: AsyncSession, make_document, order_scope, sleep_recorder
    ):
        """The second order computes a number the first one already committed."""
        first = await make_document(order_scope, "DRAFT-000001")
        second = await make_document(order_scope, "DRAFT-000002")
        first_id, second_id = first.id, second.id
        await db_session.commit()

        await NumberingService(db_session, sleep=sleep_recorder).transition_to_final(
            first_id, "CONFIRMED"
        )
        assert sleep_recorder.calls == []

        stale = StaleSequence(db_session, ["000001"])
        service = NumberingService(db_session, sleep=sleep_recorder, sequence=stale)
        record = await service.transition_to_final(second_id, "CONFIRMED")

        assert record.number == "000002"
        assert record.status == "CONFIRMED"
        # Only the losing transition waited, and only once
        assert sleep_recorder.calls == [pytest.approx(0.05)]

        first = await _reload(db_session, first_id)
        assert first.number == "000001"

        attempts = await db_session.execute(
            select(AuditLog.comment).where(
                AuditLog.entity_id == second_id,
                AuditLog.action == AuditAction.FINALIZE_NUMBER.value,
            )
        )
        assert attempts.scalars().all() == ["attempt 2"]

    async def test_retry_budget_exhausted(
        self, db_session: AsyncSession, make_document, order_scope, sleep_recorder
    ):
        first = await make_document(order_scope, "DRAFT-000001")
        second = await make_document(order_scope, "DRAFT-000002")
        first_id, second_id = first.id, second.id
        await db_session.commit()
        await NumberingService(db_session, sleep=sleep_recorder).transition_to_final(
            first_id, "CONFIRMED"
        )

        stale = StaleSequence(db_session, ["000001"] * 10)
        service = NumberingService(db_session, sleep=sleep_recorder, sequence=stale)
        with pytest.raises(ConcurrentNumberingConflictError) as exc_info:
            await service.transition_to_final(second_id, "CONFIRMED")

        assert exc_info.value.status_code == 409
        assert exc_info.value.details == {"attempts": 3, "document_id": second_id}
        assert sleep_recorder.calls == [pytest.approx(0.05), pytest.approx(0.1)]

        # Nothing of the failed attempts was kept
        second = await _reload(db_session, second_id)
        assert second.status == "DRAFT"
        assert second.number == "DRAFT-000002"
        assert second.namespace == NumberNamespace.DRAFT.value

    async def test_retransition_is_noop(
        self, db_session: AsyncSession, make_document, order_scope, sleep_recorder
    ):
        draft = await make_document(order_scope, "DRAFT-000001")
        draft_id = draft.id
        await db_session.commit()
        service = NumberingService(db_session, sleep=sleep_recorder)

        first = await service.transition_to_final(draft_id, "CONFIRMED")
        again = await service.transition_to_final(draft_id, "IN_PROGRESS")

        assert again.number == first.number == "000001"
        assert again.status == "CONFIRMED"
        finalize_count = await db_session.scalar(
            select(func.count())
            .select_from(AuditLog)
            .where(
                AuditLog.entity_id == draft_id,
                AuditLog.action == AuditAction.FINALIZE_NUMBER.value,
            )
        )
        assert finalize_count == 1

    async def test_canceled_numbers_are_not_reused(
        self, db_session: AsyncSession, make_document, order_scope, sleep_recorder
    ):
        final_scope = order_scope.with_namespace(NumberNamespace.FINAL)
        await make_document(final_scope, "000001", status="CANCELED")
        draft = await make_document(order_scope, "DRAFT-000001")
        draft_id = draft.id
        await db_session.commit()

        record = await NumberingService(db_session, sleep=sleep_recorder).transition_to_final(
            draft_id, "CONFIRMED"
        )

        assert record.number == "000002"

    async def test_draft_numbers_do_not_advance_final_sequence(
        self, db_session: AsyncSession, make_document, order_scope, sleep_recorder
    ):
        await make_document(order_scope, "DRAFT-000041")
        draft = await make_document(order_scope, "DRAFT-000042")
        draft_id = draft.id
        await db_session.commit()

        record = await NumberingService(db_session, sleep=sleep_recorder).transition_to_final(
            draft_id, "CONFIRMED"
        )

        assert record.number == "000001"

    async def test_cancel_is_not_a_finalizing_target(
        self, db_session: AsyncSession, make_document, order_scope
    ):
        draft = await make_document(order_scope, "DRAFT-000001")
        await db_session.commit()

        with pytest.raises(ValidationError):
            await NumberingService(db_session).transition_to_final(draft.id, "CANCELED")

    async def test_illegal_target_status(
        self, db_session: AsyncSession, make_document, order_scope
    ):
        draft = await make_document(order_scope, "DRAFT-000001")
        await db_session.commit()

        with pytest.raises(ValidationError):
            await NumberingService(db_session).transition_to_final(draft.id, "DELIVERED")

    async def test_placeholder_format(self, db_session: AsyncSession, step_clock):
        coordinator = TransitionCoordinator(db_session, clock=step_clock)

        placeholder = coordinator.placeholder_for(42)

        assert re.match(r"^TEMP-\d+-42$", placeholder)
        assert placeholder != coordinator.placeholder_for(42)

    async def test_canceled_draft_is_not_finalized(
        self, db_session: AsyncSession, make_document, order_scope
    ):
        draft = await make_document(order_scope, "DRAFT-000001")
        draft.status = "CANCELED"
        await db_session.commit()

        with pytest.raises(ValidationError):
            await NumberingService(db_session).transition_to_final(draft.id, "CONFIRMED")

    async def test_cancel_during_transition_is_reported(
        self, db_session: AsyncSession, make_document, order_scope, sleep_recorder
    ):
        draft = await make_document(order_scope, "DRAFT-000001")
        draft_id = draft.id
        await db_session.commit()
        coordinator = CancelingCoordinator(db_session, sleep=sleep_recorder)

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.transition_to_final(draft_id, "CONFIRMED")

        assert "CANCELED" in exc_info.value.message
        record = await _reload(db_session, draft_id)
        assert record.number == "DRAFT-000001"
        assert record.namespace == NumberNamespace.DRAFT.value
        assert sleep_recorder.calls == []

    async def test_zero_attempt_budget_is_kept(self, db_session: AsyncSession):
        coordinator = TransitionCoordinator(db_session, max_attempts=0)

        assert coordinator.max_attempts == 0


class TestRunWithRetry:
    """Tests for the generic retry loop."""

    async def test_returns_first_success(self, db_session: AsyncSession, sleep_recorder):
        async def operation(attempt: int) -> str:
            return f"done on {attempt}"

        result = await run_with_retry(
            operation, db=db_session, max_attempts=3, sleep=sleep_recorder, backoff_seconds=1.0
        )

        assert result == "done on 1"
        assert sleep_recorder.calls == []

    async def test_linear_backoff(self, db_session: AsyncSession, sleep_recorder):
        async def operation(attempt: int) -> int:
            if attempt < 3:
                raise FinalNumberTakenError("000001")
            return attempt

        result = await run_with_retry(
            operation, db=db_session, max_attempts=3, sleep=sleep_recorder, backoff_seconds=0.5
        )

        assert result == 3
        assert sleep_recorder.calls == [0.5, 1.0]

    async def test_timeout_is_retried(self, db_session: AsyncSession, sleep_recorder):
        async def operation(attempt: int) -> int:
            if attempt == 1:
                raise TimeoutError()
            return attempt

        assert await run_with_retry(
            operation, db=db_session, max_attempts=2, sleep=sleep_recorder
        ) == 2

    async def test_other_errors_propagate(self, db_session: AsyncSession, sleep_recorder):
        async def operation(attempt: int) -> int:
            raise ValidationError("bad number", field="number")

        with pytest.raises(ValidationError):
            await run_with_retry(operation, db=db_session, max_attempts=3, sleep=sleep_recorder)
        assert sleep_recorder.calls == []
