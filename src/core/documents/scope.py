from dataclasses import dataclass, replace
from datetime import date, datetime

from src.core.documents.models import DocumentRecord
from src.core.documents.types import DocumentType, NumberNamespace, get_type_spec
from src.core.exceptions import InvalidScopeError

MAX_PREFIX_LENGTH = 10


@dataclass(frozen=True)
class ScopeKey:
    """Domain within which a document number must be unique."""

    workspace_id: str
    document_type: DocumentType
    prefix: str
    issue_year: int
    namespace: NumberNamespace

    @property
    def is_draft(self) -> bool:
        return self.namespace == NumberNamespace.DRAFT

    def with_namespace(self, namespace: NumberNamespace) -> "ScopeKey":
        return replace(self, namespace=namespace)


def resolve_scope(
    workspace_id: str | None,
    document_type: DocumentType | str | None,
    prefix: str | None = None,
    issue_date: date | datetime | None = None,
    is_draft: bool = False,
) -> ScopeKey:
    """
    Derive the numbering scope of a request.

    Every caller goes through here instead of assembling prefixes itself, so the
    draft marker is never part of a scope and cannot be applied twice.
    """
    if not workspace_id or not str(workspace_id).strip():
        raise InvalidScopeError("workspace_id is required", field="workspace_id")
    if not document_type:
        raise InvalidScopeError("document_type is required", field="document_type")
    try:
        doc_type = DocumentType(document_type)
    except ValueError:
        raise InvalidScopeError(
            f"Unknown document type: {document_type}", field="document_type"
        ) from None

    if issue_date is None:
        issue_date = date.today()
    elif isinstance(issue_date, datetime):
        issue_date = issue_date.date()

    if prefix is None or not prefix.strip():
        prefix = get_type_spec(doc_type).default_prefix(issue_date)
    else:
        prefix = prefix.strip()
    if len(prefix) > MAX_PREFIX_LENGTH:
        raise InvalidScopeError(
            f"Prefix must be at most {MAX_PREFIX_LENGTH} characters", field="prefix"
        )

    return ScopeKey(
        workspace_id=str(workspace_id).strip(),
        document_type=doc_type,
        prefix=prefix,
        issue_year=issue_date.year,
        namespace=NumberNamespace.DRAFT if is_draft else NumberNamespace.FINAL,
    )


def scope_for_record(record: DocumentRecord, namespace: NumberNamespace) -> ScopeKey:
    """Scope of an existing record, reusing its stored prefix and issue year."""
    return ScopeKey(
        workspace_id=record.workspace_id,
        document_type=DocumentType(record.document_type),
        prefix=record.prefix,
        issue_year=record.issue_year,
        namespace=namespace,
    )
