"""
ClinicSession - Security Audit Logger

Append-only, hash-chained recording of security events.

Design:
- record_event is fire-and-forget: a failing audit write is logged and
  never propagates into the authentication flow that triggered it
- Appends are serialized in-process so each row links to its true predecessor
- Details must never contain passwords, codes, or token values
"""

import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlmodel import Session, select

from clinicsession.audit.hash_chain import compute_event_hash, get_latest_hash, verify_chain
from clinicsession.audit.models import (
    ChainVerificationResult,
    SecurityEvent,
    SecurityEventType,
    Severity,
    default_severity,
)
from clinicsession.auth.models import utcnow
from clinicsession.logging import get_logger


logger = get_logger(__name__)


class SecurityAuditLogger:
    """
    Writes SecurityEvent rows and mirrors each one to the structured log.

    Args:
        session_factory: Callable returning a new SQLModel Session
        clock: Callable returning the current naive-UTC datetime
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._lock = threading.Lock()

    def record_event(
        self,
        actor_id: Optional[Any],
        event_type: SecurityEventType,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[Severity] = None,
        description: Optional[str] = None,
    ) -> Optional[SecurityEvent]:
        """
        Record a security event.

        Args:
            actor_id: Account the event concerns (None for unknown callers)
            event_type: Event category
            details: JSON-serializable metadata
            severity: Override the per-type default
            description: Human-readable summary

        Returns:
            The stored event, or None if the write failed
        """
        severity = severity or default_severity(event_type)
        details = dict(details or {})
        actor = str(actor_id) if actor_id is not None else None

        try:
            log = logger.warning if severity != Severity.INFO else logger.info
            log(
                "security_event",
                event_type=event_type.value,
                severity=severity.value,
                actor_id=actor,
                details=details,
            )

            with self._lock, self._session_factory() as session:
                prev_hash = get_latest_hash(session)
                event_id = str(uuid.uuid4())
                timestamp = self._clock()
                text = description or event_type.value.replace("_", " ").lower()
                event = SecurityEvent(
                    event_id=event_id,
                    timestamp=timestamp,
                    event_type=event_type.value,
                    severity=severity.value,
                    actor_id=actor,
                    description=text,
                    details=details,
                    prev_hash=prev_hash,
                    hash=compute_event_hash(
                        event_id=event_id,
                        timestamp=timestamp,
                        event_type=event_type.value,
                        severity=severity.value,
                        actor_id=actor,
                        description=text,
                        details=details,
                        prev_hash=prev_hash,
                    ),
                )
                session.add(event)
                session.commit()
                session.refresh(event)
                return event
        except Exception as e:
            logger.error("audit_write_failed", event_type=event_type.value, error=str(e))
            return None

    def list_events(
        self,
        actor_id: Optional[Any] = None,
        event_type: Optional[SecurityEventType] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        """Most recent events first, optionally filtered."""
        with self._session_factory() as session:
            statement = select(SecurityEvent)
            if actor_id is not None:
                statement = statement.where(SecurityEvent.actor_id == str(actor_id))
            if event_type is not None:
                statement = statement.where(SecurityEvent.event_type == event_type.value)
            statement = statement.order_by(SecurityEvent.seq.desc()).limit(limit)
            return list(session.exec(statement).all())

    def verify_integrity(self) -> ChainVerificationResult:
        with self._session_factory() as session:
            return verify_chain(session)
