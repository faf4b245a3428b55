"""
SQLAlchemy models
"""
from app.models.knowledge import KnowledgeEntry, KnowledgeEntryRevision, KnowledgeSource
from app.models.conversation import (
    Conversation, ChatMessage, ConversationStatus, ResolutionType, SenderType, AnswerSource
)
from app.models.learning import (
    FeedbackDetail, LearningQueueEntry, RecurringQuestion, FeedbackType, LearningStatus,
    LearningSourceType, LearningQueueStatus, PromotionAction
)
from app.models.audit import AuditEvent

__all__ = [
    "KnowledgeEntry",
    "KnowledgeEntryRevision",
    "KnowledgeSource",
    "Conversation",
    "ChatMessage",
    "ConversationStatus",
    "ResolutionType",
    "SenderType",
    "AnswerSource",
    "FeedbackDetail",
    "LearningQueueEntry",
    "RecurringQuestion",
    "FeedbackType",
    "LearningStatus",
    "LearningSourceType",
    "LearningQueueStatus",
    "PromotionAction",
    "AuditEvent",
]
