from far_audit.models.gl import GLEntry
from far_audit.models.document import Document, DocumentApproval, DocumentItem
from far_audit.models.link import GLDocLink
from far_audit.models.audit import AuditLog, AICallLog

__all__ = [
    "GLEntry",
    "Document", "DocumentApproval", "DocumentItem",
    "GLDocLink",
    "AuditLog", "AICallLog",
]
