from src.core.audit.models import AuditLog
from src.core.audit.service import create_audit_log, list_audit_entries, AuditAction

__all__ = ["AuditLog", "create_audit_log", "list_audit_entries", "AuditAction"]
