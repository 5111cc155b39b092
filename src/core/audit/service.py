from enum import StrEnum
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.models import AuditLog


class AuditAction(StrEnum):
    """Standard audit actions."""

    CHANGE_STATUS = "CHANGE_STATUS"
    CONVERT = "CONVERT"

    # Numbering actions
    ALLOCATE_NUMBER = "ALLOCATE_NUMBER"
    RENAME_NUMBER = "RENAME_NUMBER"
    FINALIZE_NUMBER = "FINALIZE_NUMBER"
    REPAIR_NUMBER = "REPAIR_NUMBER"


async def create_audit_log(
    session: AsyncSession,
    action: str | AuditAction,
    entity_type: str,
    entity_id: int,
    workspace_id: str | None = None,
    entity_identifier: str | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    comment: str | None = None,
) -> AuditLog:
    """
    Create an audit log entry.

    Args:
        session: Database session
        action: Action performed (e.g., RENAME_NUMBER, FINALIZE_NUMBER)
        entity_type: Type of entity (e.g., invoice, purchase_order)
        entity_id: ID of the entity
        workspace_id: Tenant the entity belongs to
        entity_identifier: Human-readable identifier (e.g., document number)
        old_values: State before change
        new_values: State after change
        comment: Additional comment

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        workspace_id=workspace_id,
        action=str(action),
        entity_type=entity_type,
        entity_id=entity_id,
        entity_identifier=entity_identifier,
        old_values=old_values,
        new_values=new_values,
        comment=comment,
    )

    session.add(audit_log)
    await session.flush()

    return audit_log


async def list_audit_entries(
    session: AsyncSession,
    *,
    workspace_id: str | None = None,
    entity_id: int | None = None,
    action: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[AuditLog], int]:
    """
    List audit log entries with optional filters.
    Returns (entries newest first, total_count).
    """
    q = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    count_q = select(func.count()).select_from(AuditLog)
    if workspace_id is not None:
        q = q.where(AuditLog.workspace_id == workspace_id)
        count_q = count_q.where(AuditLog.workspace_id == workspace_id)
    if entity_id is not None:
        q = q.where(AuditLog.entity_id == entity_id)
        count_q = count_q.where(AuditLog.entity_id == entity_id)
    if action is not None:
        q = q.where(AuditLog.action == action)
        count_q = count_q.where(AuditLog.action == action)

    total_result = await session.execute(count_q)
    total = total_result.scalar_one()

    q = q.offset((page - 1) * limit).limit(limit)
    result = await session.execute(q)
    return list(result.scalars().all()), total
