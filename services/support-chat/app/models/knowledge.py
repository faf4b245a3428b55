"""
Knowledge base models: entries the matcher ranks and their revision history
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Float, Boolean, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum
from app.core.database import Base, JSONType


class KnowledgeSource(str, enum.Enum):
    FAQ = "faq"
    TICKET_RESOLUTION = "ticket_resolution"
    MANUAL = "manual"
    CHAT_LEARNING = "chat_learning"


class KnowledgeEntry(Base):
    __tablename__ = "chat_knowledge_base"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    pattern = Column(Text, nullable=False)  # Canonical question text
    answer = Column(Text, nullable=False)  # Answer template
    category = Column(String, nullable=False, default="general", index=True)
    keywords = Column(JSONType, nullable=False, default=list)  # Normalized tokens
    source = Column(SQLEnum(KnowledgeSource), nullable=False, default=KnowledgeSource.MANUAL, index=True)
    source_id = Column(String, nullable=True)  # FAQ id, ticket id or learning queue id
    usage_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    confidence_threshold = Column(Float, nullable=False, default=0.8)  # 0.0-1.0
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    language = Column(String, nullable=False, default="de")
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_updated = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_used_at = Column(DateTime, nullable=True)

    # Relationships
    revisions = relationship(
        "KnowledgeEntryRevision",
        back_populates="entry",
        order_by="KnowledgeEntryRevision.version",
    )

    @property
    def success_rate(self) -> float:
        """Success rate as a percentage (0-100), 0 when the entry has no rated uses"""
        rated = (self.success_count or 0) + (self.failure_count or 0)
        if rated == 0:
            return 0.0
        return (self.success_count or 0) * 100.0 / rated

    def to_dict(self):
        return {
            "id": str(self.id),
            "pattern": self.pattern,
            "answer": self.answer,
            "category": self.category,
            "keywords": list(self.keywords or []),
            "source": self.source.value,
            "source_id": self.source_id,
            "usage_count": self.usage_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": round(self.success_rate, 2),
            "confidence_threshold": self.confidence_threshold,
            "priority": self.priority,
            "is_active": self.is_active,
            "language": self.language,
            "version": self.version,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


class KnowledgeEntryRevision(Base):
    """One row per version of a knowledge entry"""
    __tablename__ = "chat_knowledge_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    knowledge_id = Column(Uuid, ForeignKey("chat_knowledge_base.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    pattern = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    change_source = Column(String, nullable=False, default="manual")  # manual | learning_queue | ticket
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    # Relationships
    entry = relationship("KnowledgeEntry", back_populates="revisions")
