"""
Conversation and chat message models
"""
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Integer, Float, Boolean, Text, Uuid,
    CheckConstraint, UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from typing import Optional
import uuid
import enum
from app.core.database import Base, JSONType


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    ABANDONED = "abandoned"


class ResolutionType(str, enum.Enum):
    AI_RESOLVED = "ai_resolved"
    ESCALATED = "escalated"
    USER_LEFT = "user_left"
    TIMEOUT = "timeout"


class SenderType(str, enum.Enum):
    USER = "user"
    AI = "ai"
    SYSTEM = "system"


class AnswerSource(str, enum.Enum):
    KNOWLEDGE_BASE = "knowledge_base"
    GENERATIVE = "generative"
    GENERATIVE_FALLBACK = "generative_fallback"
    IMPROVED_FROM_FEEDBACK = "improved_from_feedback"


class Conversation(Base):
    __tablename__ = "chat_conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(ConversationStatus), nullable=False, default=ConversationStatus.ACTIVE, index=True)
    resolution_type = Column(SQLEnum(ResolutionType), nullable=True)
    escalated_ticket_ref = Column(String, nullable=True)
    message_count = Column(Integer, nullable=False, default=0)
    fallback_attempt_count = Column(Integer, nullable=False, default=0)
    satisfaction_rating = Column(Integer, nullable=True)  # 1-5
    was_helpful = Column(Boolean, nullable=True)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    ended_at = Column(DateTime, nullable=True)

    # Relationships
    messages = relationship(
        "ChatMessage",
        back_populates="conversation",
        order_by="ChatMessage.sequence",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != ConversationStatus.ACTIVE

    def to_dict(self):
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "status": self.status.value,
            "resolution_type": self.resolution_type.value if self.resolution_type else None,
            "escalated_ticket_ref": self.escalated_ticket_ref,
            "message_count": self.message_count,
            "fallback_attempt_count": self.fallback_attempt_count,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


class ChatMessage(Base):
    """
    Append-only chat message.

    The sender is a closed set; only ai messages carry a confidence score and
    knowledge linkage. Build messages through the user/ai/system constructors.
    """
    __tablename__ = "chat_messages"
    __table_args__ = (
        CheckConstraint(
            "(sender_type = 'AI' AND confidence_score IS NOT NULL) OR "
            "(sender_type != 'AI' AND confidence_score IS NULL AND related_knowledge_id IS NULL)",
            name="ck_chat_messages_ai_confidence",
        ),
        UniqueConstraint("conversation_id", "sequence", name="uq_chat_messages_sequence"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("chat_conversations.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)  # Position within the conversation
    sender_type = Column(SQLEnum(SenderType), nullable=False)
    text = Column(Text, nullable=False)
    confidence_score = Column(Float, nullable=True)
    related_knowledge_id = Column(Uuid, ForeignKey("chat_knowledge_base.id"), nullable=True)
    answer_source = Column(SQLEnum(AnswerSource), nullable=True)
    was_helpful = Column(Boolean, nullable=True)  # Unset / helpful / not helpful
    success_revoked = Column(Boolean, nullable=False, default=False)  # Served knowledge success taken back
    source_metadata = Column(JSONType, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")

    @classmethod
    def user(cls, conversation: Conversation, text: str) -> "ChatMessage":
        return cls._append(conversation, SenderType.USER, text)

    @classmethod
    def system(cls, conversation: Conversation, text: str) -> "ChatMessage":
        return cls._append(conversation, SenderType.SYSTEM, text)

    @classmethod
    def ai(
        cls,
        conversation: Conversation,
        text: str,
        confidence: float,
        source: AnswerSource,
        related_knowledge_id: Optional[uuid.UUID] = None,
        metadata: Optional[dict] = None,
    ) -> "ChatMessage":
        if confidence is None:
            raise ValueError("ai messages require a confidence score")
        message = cls._append(conversation, SenderType.AI, text)
        message.confidence_score = float(confidence)
        message.answer_source = source
        message.related_knowledge_id = related_knowledge_id
        message.source_metadata = {"source": source.value, **(metadata or {})}
        return message

    @classmethod
    def _append(cls, conversation: Conversation, sender: SenderType, text: str) -> "ChatMessage":
        now = datetime.utcnow()
        conversation.message_count = (conversation.message_count or 0) + 1
        conversation.updated_at = now
        return cls(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            sequence=conversation.message_count,
            sender_type=sender,
            text=text,
            created_at=now,
        )

    def to_dict(self):
        result = {
            "id": str(self.id),
            "conversation_id": str(self.conversation_id),
            "sender": self.sender_type.value,
            "text": self.text,
            "created_at": self.created_at.isoformat(),
        }
        if self.sender_type == SenderType.AI:
            result.update({
                "confidence_score": self.confidence_score,
                "source": self.answer_source.value if self.answer_source else None,
                "related_knowledge_id": str(self.related_knowledge_id) if self.related_knowledge_id else None,
                "was_helpful": self.was_helpful,
            })
        return result
