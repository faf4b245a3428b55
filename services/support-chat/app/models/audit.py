"""
Audit event model
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from app.core.database import Base, JSONType


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("chat_conversations.id"), nullable=True, index=True)
    knowledge_entry_id = Column(Uuid, ForeignKey("chat_knowledge_base.id"), nullable=True, index=True)
    event_type = Column(String, nullable=False, index=True)  # e.g., "conversation_escalated", "knowledge_promoted"
    payload = Column(JSONType, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    # Relationships
    conversation = relationship("Conversation")
