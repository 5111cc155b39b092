from datetime import date

from sqlalchemy import BigInteger, Date, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import BaseModel
from src.core.documents.types import DRAFT_STATUS, NumberNamespace


class DocumentRecord(BaseModel):
    """
    Numbered business document (invoice, quote, purchase order, credit note).

    The numbering engine owns `number` and `namespace`; the rest belongs to the
    document workflows. Sequence state is derived from these rows, there is no
    separate counter table.
    """

    __tablename__ = "documents"

    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    document_type: Mapped[str] = mapped_column(String(30), nullable=False)
    prefix: Mapped[str] = mapped_column(String(10), nullable=False)
    number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    namespace: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NumberNamespace.DRAFT.value
    )
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    issue_year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=DRAFT_STATUS)

    source_document_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("documents.id"), nullable=True
    )

    __table_args__ = (
        # Final arbiter of number uniqueness. NULL numbers never collide.
        UniqueConstraint(
            "number",
            "workspace_id",
            "document_type",
            "prefix",
            "issue_year",
            "namespace",
            name="uq_documents_number_scope",
        ),
        Index(
            "ix_documents_scope",
            "workspace_id",
            "document_type",
            "prefix",
            "issue_year",
            "namespace",
        ),
    )
