from database.audit_log_table.repository import AuditLogTableRepository

__all__ = ["AuditLogTableRepository"]
