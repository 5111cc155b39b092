"""Per document type numbering rules: default prefix and status graph."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum


class DocumentType(StrEnum):
    """Document types that receive numbers."""

    INVOICE = "invoice"
    QUOTE = "quote"
    PURCHASE_ORDER = "purchase_order"
    CREDIT_NOTE = "credit_note"


class NumberNamespace(StrEnum):
    """Independent numbering domains. PLACEHOLDER only exists inside a transition."""

    DRAFT = "draft"
    FINAL = "final"
    PLACEHOLDER = "placeholder"


DRAFT_STATUS = "DRAFT"
CANCELED_STATUS = "CANCELED"


class InvoiceStatus(StrEnum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class QuoteStatus(StrEnum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class PurchaseOrderStatus(StrEnum):
    DRAFT = "DRAFT"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


class CreditNoteStatus(StrEnum):
    DRAFT = "DRAFT"
    CREATED = "CREATED"
    CANCELED = "CANCELED"


def _monthly_prefix(head: str, trailing_dash: bool = True) -> Callable[[date], str]:
    def build(issue_date: date) -> str:
        prefix = f"{head}-{issue_date.year}{issue_date.month:02d}"
        return f"{prefix}-" if trailing_dash else prefix

    return build


@dataclass(frozen=True)
class DocumentTypeSpec:
    """Numbering behaviour of one document type."""

    document_type: DocumentType
    statuses: tuple[str, ...]
    transitions: dict[str, frozenset[str]]
    prefix_rule: Callable[[date], str]
    # target type -> status the source must be in
    convertible_to: dict[DocumentType, str] = field(default_factory=dict)

    def default_prefix(self, issue_date: date) -> str:
        return self.prefix_rule(issue_date)

    def is_valid_status(self, status: str) -> bool:
        return status in self.statuses

    def is_finalized(self, status: str) -> bool:
        """Finalized means the document holds (or must hold) a final number."""
        return status in self.statuses and status not in (DRAFT_STATUS, CANCELED_STATUS)

    def is_terminal(self, status: str) -> bool:
        return not self.transitions.get(status)

    def can_transition(self, from_status: str, to_status: str) -> bool:
        return to_status in self.transitions.get(from_status, frozenset())

    def allowed_targets(self, from_status: str) -> list[str]:
        return sorted(self.transitions.get(from_status, frozenset()))


def _graph(**edges: tuple[str, ...]) -> dict[str, frozenset[str]]:
    return {status: frozenset(targets) for status, targets in edges.items()}


DOCUMENT_TYPE_SPECS: dict[DocumentType, DocumentTypeSpec] = {
    DocumentType.INVOICE: DocumentTypeSpec(
        document_type=DocumentType.INVOICE,
        statuses=tuple(s.value for s in InvoiceStatus),
        transitions=_graph(
            DRAFT=("PENDING", "COMPLETED", "CANCELED"),
            PENDING=("OVERDUE", "COMPLETED", "CANCELED"),
            OVERDUE=("COMPLETED", "CANCELED"),
            COMPLETED=(),
            CANCELED=(),
        ),
        prefix_rule=_monthly_prefix("F"),
        convertible_to={DocumentType.CREDIT_NOTE: InvoiceStatus.COMPLETED.value},
    ),
    DocumentType.QUOTE: DocumentTypeSpec(
        document_type=DocumentType.QUOTE,
        statuses=tuple(s.value for s in QuoteStatus),
        transitions=_graph(
            DRAFT=("PENDING", "CANCELED"),
            PENDING=("COMPLETED", "CANCELED"),
            COMPLETED=(),
            CANCELED=(),
        ),
        prefix_rule=_monthly_prefix("D"),
        convertible_to={
            DocumentType.INVOICE: QuoteStatus.COMPLETED.value,
            DocumentType.PURCHASE_ORDER: QuoteStatus.COMPLETED.value,
        },
    ),
    DocumentType.PURCHASE_ORDER: DocumentTypeSpec(
        document_type=DocumentType.PURCHASE_ORDER,
        statuses=tuple(s.value for s in PurchaseOrderStatus),
        transitions=_graph(
            DRAFT=("CONFIRMED", "CANCELED"),
            CONFIRMED=("IN_PROGRESS", "CANCELED"),
            IN_PROGRESS=("DELIVERED", "CANCELED"),
            DELIVERED=(),
            CANCELED=(),
        ),
        prefix_rule=_monthly_prefix("BC", trailing_dash=False),
        convertible_to={DocumentType.INVOICE: PurchaseOrderStatus.DELIVERED.value},
    ),
    DocumentType.CREDIT_NOTE: DocumentTypeSpec(
        document_type=DocumentType.CREDIT_NOTE,
        statuses=tuple(s.value for s in CreditNoteStatus),
        transitions=_graph(
            DRAFT=("CREATED", "CANCELED"),
            CREATED=(),
            CANCELED=(),
        ),
        prefix_rule=_monthly_prefix("AV"),
    ),
}


def get_type_spec(document_type: DocumentType | str) -> DocumentTypeSpec:
    """Look up the rules of a document type. Raises ValueError for unknown types."""
    return DOCUMENT_TYPE_SPECS[DocumentType(document_type)]
