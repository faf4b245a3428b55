"""
Feedback and learning models: negative feedback, learning queue, recurring questions
"""
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Integer, Float, Boolean, Text, Uuid,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum
from app.core.database import Base, JSONType


class FeedbackType(str, enum.Enum):
    INCORRECT = "incorrect"
    INCOMPLETE = "incomplete"
    UNCLEAR = "unclear"
    OUTDATED = "outdated"
    OTHER = "other"


class LearningStatus(str, enum.Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    LEARNED = "learned"
    AUTO_LEARNED = "auto_learned"
    REJECTED = "rejected"


# Forward-only ordering; REJECTED is handled separately
LEARNING_STATUS_RANK = {
    LearningStatus.PENDING: 0,
    LearningStatus.REVIEWED: 1,
    LearningStatus.LEARNED: 2,
    LearningStatus.AUTO_LEARNED: 2,
}


class LearningSourceType(str, enum.Enum):
    FEEDBACK = "feedback"
    PATTERN = "pattern"
    TICKET = "ticket"
    MANUAL = "manual"


class LearningQueueStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


class PromotionAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"


class FeedbackDetail(Base):
    __tablename__ = "chat_feedback_details"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id = Column(Uuid, ForeignKey("chat_messages.id"), nullable=False, index=True)
    conversation_id = Column(Uuid, ForeignKey("chat_conversations.id"), nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    original_question = Column(Text, nullable=False)
    original_answer = Column(Text, nullable=False)
    related_knowledge_id = Column(Uuid, ForeignKey("chat_knowledge_base.id"), nullable=True)
    feedback_type = Column(SQLEnum(FeedbackType), nullable=False)
    feedback_text = Column(Text, nullable=True)
    correct_answer = Column(Text, nullable=True)  # User-supplied correction
    retry_attempted = Column(Boolean, nullable=False, default=False)
    improved_answer = Column(Text, nullable=True)
    improved_answer_message_id = Column(Uuid, ForeignKey("chat_messages.id"), nullable=True)
    improved_answer_helpful = Column(Boolean, nullable=True)
    learning_status = Column(SQLEnum(LearningStatus), nullable=False, default=LearningStatus.PENDING, index=True)
    learned_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    message = relationship("ChatMessage", foreign_keys=[message_id])
    improved_message = relationship("ChatMessage", foreign_keys=[improved_answer_message_id])

    def to_dict(self):
        return {
            "id": str(self.id),
            "message_id": str(self.message_id),
            "conversation_id": str(self.conversation_id),
            "feedback_type": self.feedback_type.value,
            "feedback_text": self.feedback_text,
            "correct_answer": self.correct_answer,
            "retry_attempted": self.retry_attempted,
            "improved_answer": self.improved_answer,
            "improved_answer_helpful": self.improved_answer_helpful,
            "learning_status": self.learning_status.value,
            "created_at": self.created_at.isoformat(),
        }


class LearningQueueEntry(Base):
    """Candidate knowledge update waiting for approval"""
    __tablename__ = "chat_learning_queue"
    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_learning_queue_source"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    source_type = Column(SQLEnum(LearningSourceType), nullable=False, index=True)
    source_id = Column(String, nullable=True)
    question_pattern = Column(Text, nullable=False)
    answer_template = Column(Text, nullable=False)
    category = Column(String, nullable=False, default="general")
    keywords = Column(JSONType, nullable=False, default=list)
    language = Column(String, nullable=False, default="de")
    confidence_score = Column(Float, nullable=False, default=0.0)
    priority = Column(Integer, nullable=False, default=0)
    status = Column(SQLEnum(LearningQueueStatus), nullable=False, default=LearningQueueStatus.PENDING, index=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_notes = Column(Text, nullable=True)
    knowledge_entry_id = Column(Uuid, ForeignKey("chat_knowledge_base.id"), nullable=True)
    promotion_action = Column(SQLEnum(PromotionAction), nullable=True)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    knowledge_entry = relationship("KnowledgeEntry")

    @property
    def is_approved(self) -> bool:
        return self.status in (LearningQueueStatus.APPROVED, LearningQueueStatus.AUTO_APPROVED)

    def to_dict(self):
        return {
            "id": str(self.id),
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "question_pattern": self.question_pattern,
            "answer_template": self.answer_template,
            "category": self.category,
            "keywords": list(self.keywords or []),
            "confidence_score": self.confidence_score,
            "priority": self.priority,
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "review_notes": self.review_notes,
            "knowledge_entry_id": str(self.knowledge_entry_id) if self.knowledge_entry_id else None,
            "promotion_action": self.promotion_action.value if self.promotion_action else None,
            "created_at": self.created_at.isoformat(),
        }


class RecurringQuestion(Base):
    __tablename__ = "chat_recurring_questions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    question_normalized = Column(Text, nullable=False, unique=True, index=True)
    question_examples = Column(JSONType, nullable=False, default=list)
    category = Column(String, nullable=True)
    keywords = Column(JSONType, nullable=False, default=list)
    ask_count = Column(Integer, nullable=False, default=0)
    first_asked_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_asked_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    successful_responses = Column(JSONType, nullable=False, default=list)
    avg_confidence_score = Column(Float, nullable=True)
    confidence_samples = Column(Integer, nullable=False, default=0)
    learning_priority = Column(Integer, nullable=False, default=0, index=True)
    suggested_for_learning = Column(Boolean, nullable=False, default=False, index=True)
    has_knowledge_entry = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": str(self.id),
            "question_normalized": self.question_normalized,
            "question_examples": list(self.question_examples or []),
            "category": self.category,
            "ask_count": self.ask_count,
            "avg_confidence_score": self.avg_confidence_score,
            "learning_priority": self.learning_priority,
            "suggested_for_learning": self.suggested_for_learning,
            "has_knowledge_entry": self.has_knowledge_entry,
            "last_asked_at": self.last_asked_at.isoformat(),
        }
