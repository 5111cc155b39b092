"""
Next-number computation.

The sequence is never stored: the next number of a scope is derived from the
numbers its documents currently hold, `max + 1`, zero-padded. Legacy free-text
numbers are skipped here (they still collide by exact string, see collisions).
"""

import logging
import re
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.documents.models import DocumentRecord
from src.core.documents.scope import ScopeKey
from src.core.documents.types import NumberNamespace

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"[0-9]+")


def has_draft_marker(value: str) -> bool:
    return value.startswith(settings.draft_marker)


def strip_draft_markers(value: str) -> str:
    """Remove every leading draft marker, including legacy stacked ones (DRAFT-DRAFT-...)."""
    marker = settings.draft_marker
    while value.startswith(marker):
        value = value[len(marker):]
    return value


def apply_draft_marker(value: str, scope: ScopeKey) -> str:
    """Wrap a bare sequence value as a draft number. Applied exactly once."""
    if scope.namespace != NumberNamespace.DRAFT:
        raise ValueError(f"Draft marker requested for a {scope.namespace} scope")
    if has_draft_marker(value):
        raise ValueError(f"Value {value!r} already carries the draft marker")
    return f"{settings.draft_marker}{value}"


def format_sequence(value: int, width: int = 0) -> str:
    return str(value).zfill(max(width, settings.number_width))


def parse_sequence(number: str | None, namespace: NumberNamespace) -> tuple[int, int] | None:
    """
    Return (value, width) of a number's numeric part, or None when it has none.

    Draft numbers must carry exactly one marker followed by digits only, so
    relocated drafts (DRAFT-000003-<n>) and stacked prefixes do not count.
    """
    if not number:
        return None
    body = number
    if namespace == NumberNamespace.DRAFT:
        if not has_draft_marker(number):
            return None
        body = number[len(settings.draft_marker):]
    if not _DIGITS.fullmatch(body):
        return None
    return int(body), len(body)


def scope_conditions(scope: ScopeKey) -> list:
    """WHERE clauses selecting every document of a scope."""
    return [
        DocumentRecord.workspace_id == scope.workspace_id,
        DocumentRecord.document_type == scope.document_type.value,
        DocumentRecord.prefix == scope.prefix,
        DocumentRecord.issue_year == scope.issue_year,
        DocumentRecord.namespace == scope.namespace.value,
    ]


class SequenceComputer:
    """Read-only computation of the next candidate number in a scope."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def scope_numbers(
        self, scope: ScopeKey, exclude_statuses: Iterable[str] = ()
    ) -> list[str]:
        stmt = select(DocumentRecord.number).where(
            *scope_conditions(scope),
            DocumentRecord.number.is_not(None),
        )
        excluded = [str(s) for s in exclude_statuses]
        if excluded:
            stmt = stmt.where(DocumentRecord.status.notin_(excluded))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def current_max(
        self, scope: ScopeKey, exclude_statuses: Iterable[str] = ()
    ) -> tuple[int, int] | None:
        """Highest parseable (value, width) in the scope, None if nothing parses."""
        parsed = [
            p
            for p in (
                parse_sequence(n, scope.namespace)
                for n in await self.scope_numbers(scope, exclude_statuses)
            )
            if p is not None
        ]
        if not parsed:
            return None
        highest = max(value for value, _ in parsed)
        widest = max(width for _, width in parsed)
        return highest, widest

    async def next_number(
        self, scope: ScopeKey, exclude_statuses: Iterable[str] = frozenset()
    ) -> str:
        """
        Next candidate number of the scope.

        Final scopes return the bare padded value ("000042"); draft scopes return
        it wrapped once ("DRAFT-000042"). Nothing is written: the caller persists
        the number and the unique index settles any race.
        """
        current = await self.current_max(scope, exclude_statuses)
        if current is None:
            candidate = format_sequence(1)
        else:
            highest, widest = current
            candidate = format_sequence(highest + 1, widest)

        if scope.namespace == NumberNamespace.DRAFT:
            candidate = apply_draft_marker(candidate, scope)
        elif scope.namespace != NumberNamespace.FINAL:
            raise ValueError(f"Cannot compute numbers for the {scope.namespace} namespace")

        logger.debug(
            "Next number for %s/%s %s%s: %s",
            scope.workspace_id,
            scope.document_type,
            scope.prefix,
            scope.issue_year,
            candidate,
        )
        return candidate
