from .audit_logger import AuditLogger, QueryHistoryEntry, SecurityEvent, create_audit_logger

__all__ = ["AuditLogger", "QueryHistoryEntry", "SecurityEvent", "create_audit_logger"]
