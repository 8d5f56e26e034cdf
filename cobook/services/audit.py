"""
Audit trail of booking state changes.
Entries are append-only, hashed with the service secret, and join the caller's transaction.
"""
import hashlib
import hmac
import json
from datetime import datetime
from typing import Dict, List, Optional
import uuid

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog
from .time_rules import ensure_utc, utcnow


def _jsonable(value: Optional[Dict]) -> Optional[Dict]:
    # UUIDs, datetimes and Decimals are stored as strings
    return json.loads(json.dumps(value, default=str)) if value else None


def _integrity_hash(
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: Optional[uuid.UUID],
    source: str,
    timestamp_utc: datetime,
    changes: Optional[Dict],
    context: Optional[Dict],
) -> str:
    canonical = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "source": source,
        "timestamp_utc": ensure_utc(timestamp_utc).isoformat(),
        "changes": changes,
        "context": context,
    }
    canonical = {k: v for k, v in canonical.items() if v is not None}
    payload = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{payload}:{settings.jwt_secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: Optional[uuid.UUID] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    timestamp_utc: Optional[datetime] = None,
) -> AuditLog:
    """
    Record a state change of a booking, recurring rule, late fee or template.

    Args:
        db: Database session (committed by the caller)
        entity_type: booking|recurring_booking|late_fee|template
        entity_id: Entity ID
        action: CREATE|CANCEL|DISPLACE|CHECK_OUT|CHECK_IN|WAIVE|PAUSE|RESUME
        actor_id: User who caused the change; None for system actions
        source: api|scheduler|system
        changes_json: Before/after values of changed fields
        context: Free-form details (reason, displaced ids, fee amount)
        timestamp_utc: When it happened (defaults to now)

    Returns:
        The pending AuditLog row
    """
    timestamp_utc = ensure_utc(timestamp_utc or utcnow())
    source = source or "system"
    changes = _jsonable(changes_json)
    details = _jsonable(context)

    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        source=source,
        changes_json=changes,
        timestamp_utc=timestamp_utc,
        context=details,
        integrity_hash=_integrity_hash(entity_type, entity_id, action, actor_id, source, timestamp_utc, changes, details),
    )
    db.add(entry)
    return entry


def entity_history(db: Session, entity_type: str, entity_id: uuid.UUID) -> List[AuditLog]:
    """Audit entries of one entity in the order they were written."""
    return db.query(AuditLog).filter(
        AuditLog.entity_type == entity_type,
        AuditLog.entity_id == entity_id,
    ).order_by(AuditLog.timestamp_utc, AuditLog.id).all()


def verify_audit_log(entry: AuditLog) -> bool:
    """True when the stored hash still matches the entry's content."""
    if not entry.integrity_hash:
        return False
    expected = _integrity_hash(
        entry.entity_type,
        entry.entity_id,
        entry.action,
        entry.actor_id,
        entry.source,
        entry.timestamp_utc,
        entry.changes_json,
        entry.context,
    )
    return hmac.compare_digest(expected, entry.integrity_hash)
