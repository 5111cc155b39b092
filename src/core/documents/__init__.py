from src.core.documents.models import DocumentRecord
from src.core.documents.numbering import NumberingService, RepairReport, SequenceCheck
from src.core.documents.scope import ScopeKey, resolve_scope, scope_for_record
from src.core.documents.types import DocumentType, NumberNamespace, get_type_spec

__all__ = [
    "DocumentRecord",
    "NumberingService",
    "RepairReport",
    "SequenceCheck",
    "ScopeKey",
    "resolve_scope",
    "scope_for_record",
    "DocumentType",
    "NumberNamespace",
    "get_type_spec",
]
