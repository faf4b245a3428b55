"""
Audit logging service
"""
from sqlalchemy.orm import Session
from typing import Optional, Dict, Any
from app.models.audit import AuditEvent
import uuid


def log_audit_event(
    db: Session,
    event_type: str,
    conversation_id: Optional[uuid.UUID] = None,
    knowledge_entry_id: Optional[uuid.UUID] = None,
    payload: Optional[Dict[str, Any]] = None,
    commit: bool = True
):
    """Log an audit event"""
    audit_event = AuditEvent(
        conversation_id=conversation_id,
        knowledge_entry_id=knowledge_entry_id,
        event_type=event_type,
        payload=payload or {}
    )
    db.add(audit_event)
    if commit:
        db.commit()
