"""Audit Service: append-only trail of observation state changes.

Used by the incident lifecycle, the enrichment pipeline and the
expiration sweeper. The trail is diagnostic; appends are best-effort for
callers and never roll back the state change they describe.
"""

from .audit_logger import AuditLogger, AuditAction, AuditEntry, AuditWriteError

__all__ = [
    "AuditLogger",
    "AuditAction",
    "AuditEntry",
    "AuditWriteError",
]
