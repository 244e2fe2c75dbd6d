"""
ClinicSession - Security Audit

Hash-chained security event trail for the session layer.
"""

from clinicsession.audit.models import SecurityEvent, SecurityEventType, Severity
from clinicsession.audit.logger import SecurityAuditLogger

__all__ = [
    "SecurityEvent",
    "SecurityEventType",
    "Severity",
    "SecurityAuditLogger",
]
