"""
ClinicSession - Hash Chain for Audit Integrity

Implements cryptographic hash chaining for tamper-evident security events.
Each event includes a hash of itself + the previous event's hash.

Verification:
- Any modification to an event breaks the chain
- Chain integrity can be verified by recomputing hashes
- Detects insertions, deletions, and modifications

Algorithm: SHA-256
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Optional

from sqlmodel import Session, select

from clinicsession.audit.models import SecurityEvent, ChainVerificationResult


GENESIS_MARKER = "GENESIS|clinicsession.security_events"


def compute_genesis_hash() -> str:
    """Hash that the first event of the chain links to."""
    return hashlib.sha256(GENESIS_MARKER.encode()).hexdigest()


def compute_event_hash(
    event_id: str,
    timestamp: datetime,
    event_type: str,
    severity: str,
    actor_id: Optional[str],
    description: str,
    details: Dict[str, Any],
    prev_hash: str,
) -> str:
    """
    Compute SHA-256 hash for a security event.

    Hash includes every stored column plus the previous event hash
    (chain link). Metadata is serialized with sorted keys so the
    digest survives a JSON round-trip through the database.

    Returns:
        Hex-encoded SHA-256 hash
    """
    metadata = json.dumps(details, sort_keys=True, default=str)
    content = "|".join([
        event_id,
        timestamp.isoformat(),
        event_type,
        severity,
        actor_id or "",
        description,
        metadata,
        prev_hash,
    ])
    return hashlib.sha256(content.encode()).hexdigest()


def get_latest_hash(session: Session) -> str:
    """
    Get the hash of the most recent event for chain linking.

    Returns:
        Latest event hash, or genesis hash if no events exist
    """
    latest = session.exec(
        select(SecurityEvent).order_by(SecurityEvent.seq.desc()).limit(1)
    ).first()
    if latest:
        return latest.hash
    return compute_genesis_hash()


def verify_chain(session: Session) -> ChainVerificationResult:
    """
    Verify the integrity of the whole security event chain.

    Recomputes all hashes (oldest first) and verifies they match stored values.
    """
    genesis = compute_genesis_hash()
    events = session.exec(select(SecurityEvent).order_by(SecurityEvent.seq)).all()

    prev_hash = genesis
    for event in events:
        expected_hash = compute_event_hash(
            event_id=event.event_id,
            timestamp=event.timestamp,
            event_type=event.event_type,
            severity=event.severity,
            actor_id=event.actor_id,
            description=event.description,
            details=event.details,
            prev_hash=prev_hash,
        )
        if event.prev_hash != prev_hash or event.hash != expected_hash:
            return ChainVerificationResult(
                is_valid=False,
                event_count=len(events),
                genesis_hash=genesis,
                broken_at=event.event_id,
            )
        prev_hash = event.hash

    return ChainVerificationResult(
        is_valid=True,
        event_count=len(events),
        genesis_hash=genesis,
        final_hash=prev_hash if events else None,
    )
