"""
Conversation Engine
Per-conversation state machine and turn orchestration

States: active -> resolved | escalated | abandoned (all terminal)
"""
import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    ConversationConflictError, EscalationError, InvalidInputError, InvalidStateError, NotFoundError,
)
from app.models.conversation import (
    ChatMessage, Conversation, ConversationStatus, ResolutionType, SenderType
)
from app.services.audit_service import log_audit_event
from app.services.confidence_gate import AnswerDecision, ConfidenceGate
from app.services.escalation_manager import EscalationManager
from app.services.knowledge_matcher import KnowledgeMatcher
from app.services.knowledge_store import KnowledgeStore

logger = logging.getLogger(__name__)

GREETING = "Hello! I'm your virtual support assistant. How can I help you today?"

STALE_NOTICE = (
    "Your previous chat was closed automatically because it was older than "
    "{hours} hours. How can I help you today?"
)

_conversation_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


def conversation_lock(conversation_id: uuid.UUID) -> asyncio.Lock:
    """Lock serializing turns of one conversation. Hold a reference while in use."""
    lock = _conversation_locks.get(conversation_id)
    if lock is None:
        lock = asyncio.Lock()
        _conversation_locks[conversation_id] = lock
    return lock


def commit_appended(db: Session, conversation_id: uuid.UUID):
    """
    Commit messages appended to a conversation.

    A sequence already taken by another writer rolls the session back and
    raises ConversationConflictError.
    """
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning("Conflicting append to conversation %s: %s", conversation_id, e.orig)
        raise ConversationConflictError(
            f"Conversation {conversation_id} was changed concurrently, retry the request",
            conversation_id=conversation_id
        )


class TurnResult:
    """Messages written by one user turn and any escalation it triggered"""
    def __init__(
        self,
        conversation: Conversation,
        user_message: ChatMessage,
        ai_message: ChatMessage,
        decision: AnswerDecision
    ):
        self.conversation = conversation
        self.user_message = user_message
        self.ai_message = ai_message
        self.decision = decision
        self.escalated = False
        self.ticket_ref: Optional[str] = None
        self.escalation_error: Optional[str] = None

    def to_dict(self):
        return {
            "conversation": self.conversation.to_dict(),
            "user_message": self.user_message.to_dict(),
            "ai_message": self.ai_message.to_dict(),
            "escalated": self.escalated,
            "ticket_ref": self.ticket_ref,
            "escalation_error": self.escalation_error,
        }


class ConversationEngine:
    """Owns conversation lifecycle and runs the matcher/gate pipeline per turn"""

    def __init__(
        self,
        db: Session,
        gate: Optional[ConfidenceGate] = None,
        escalation_manager: Optional[EscalationManager] = None,
        matcher: Optional[KnowledgeMatcher] = None,
        store: Optional[KnowledgeStore] = None
    ):
        self.db = db
        self.store = store or KnowledgeStore(db)
        self.matcher = matcher or KnowledgeMatcher(db, store=self.store)
        self.gate = gate or ConfidenceGate(db, store=self.store)
        self.escalation_manager = escalation_manager or EscalationManager(db)

    # Lookup

    def get_conversation(self, conversation_id: uuid.UUID) -> Conversation:
        conversation = self.db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if not conversation:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def get_messages(self, conversation_id: uuid.UUID) -> List[ChatMessage]:
        self.get_conversation(conversation_id)
        return self.db.query(ChatMessage).filter(
            ChatMessage.conversation_id == conversation_id
        ).order_by(ChatMessage.sequence).all()

    def get_user_conversations(self, user_id: str, limit: int = 10) -> List[Conversation]:
        return self.db.query(Conversation).filter(
            Conversation.user_id == user_id
        ).order_by(Conversation.started_at.desc()).limit(limit).all()

    def is_stale(self, conversation: Conversation, now: Optional[datetime] = None) -> bool:
        """Reuse guard: last activity older than the staleness window"""
        now = now or datetime.utcnow()
        last_activity = conversation.updated_at or conversation.started_at
        return now - last_activity > timedelta(hours=settings.CONVERSATION_STALENESS_HOURS)

    def get_or_create_active_conversation(self, user_id: str) -> Conversation:
        """
        Newest active conversation of the user, or a fresh one.

        A stale active conversation is closed as abandoned/timeout (its
        history stays) and the new conversation opens with a notice.
        """
        if not user_id or not user_id.strip():
            raise InvalidInputError("user_id is required")

        existing = self.db.query(Conversation).filter(
            Conversation.user_id == user_id,
            Conversation.status == ConversationStatus.ACTIVE
        ).order_by(Conversation.started_at.desc()).first()

        if existing is None:
            return self.start_conversation(user_id)

        if not self.is_stale(existing):
            return existing

        logger.info("Closing stale conversation %s for user %s", existing.id, user_id)
        self._close(existing, ConversationStatus.ABANDONED, ResolutionType.TIMEOUT, reason="stale_on_lookup")
        return self.start_conversation(
            user_id,
            notice=STALE_NOTICE.format(hours=settings.CONVERSATION_STALENESS_HOURS)
        )

    def start_conversation(self, user_id: str, notice: Optional[str] = None) -> Conversation:
        """Open a new active conversation with the greeting"""
        if not user_id or not user_id.strip():
            raise InvalidInputError("user_id is required")

        now = datetime.utcnow()
        conversation = Conversation(
            id=uuid.uuid4(),
            user_id=user_id,
            status=ConversationStatus.ACTIVE,
            message_count=0,
            fallback_attempt_count=0,
            started_at=now,
            updated_at=now
        )
        self.db.add(conversation)
        self.db.add(ChatMessage.system(conversation, GREETING))
        if notice:
            self.db.add(ChatMessage.system(conversation, notice))
        self.db.commit()
        self.db.refresh(conversation)

        logger.info("Started conversation %s for user %s", conversation.id, user_id)
        return conversation

    # Turns

    def _validate_text(self, text: str) -> str:
        if text is None or not text.strip():
            raise InvalidInputError("Message must not be empty")
        text = text.strip()
        if len(text) > settings.MAX_MESSAGE_LENGTH:
            raise InvalidInputError(
                f"Message is too long ({len(text)} characters, limit {settings.MAX_MESSAGE_LENGTH})"
            )
        return text

    def _get_active(self, conversation_id: uuid.UUID) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        if conversation.is_terminal:
            raise InvalidStateError(
                f"Conversation {conversation_id} is {conversation.status.value}"
            )
        return conversation

    async def send_user_message(self, conversation_id: uuid.UUID, text: str) -> TurnResult:
        """
        Run one user turn

        1. Append the user message
        2. Match knowledge and let the gate pick an answer
        3. Append the ai message, count fallbacks
        4. Record usage / recurring question outcome
        5. Escalate automatically when the fallback ceiling or the age limit is passed
        """
        text = self._validate_text(text)

        lock = conversation_lock(conversation_id)
        async with lock:
            conversation = self._get_active(conversation_id)
            history = self.db.query(ChatMessage).filter(
                ChatMessage.conversation_id == conversation.id
            ).order_by(ChatMessage.sequence).all()

            user_message = ChatMessage.user(conversation, text)
            self.db.add(user_message)
            commit_appended(self.db, conversation.id)

            matches = self.matcher.match(text)
            decision = await self.gate.decide(conversation, matches, history, text)

            ai_message = ChatMessage.ai(
                conversation,
                decision.text,
                decision.confidence,
                decision.source,
                related_knowledge_id=decision.related_knowledge_id,
                metadata=decision.metadata
            )
            self.db.add(ai_message)
            if decision.is_fallback:
                conversation.fallback_attempt_count = (conversation.fallback_attempt_count or 0) + 1
            commit_appended(self.db, conversation.id)

            category = matches[0][0].category if matches else "general"
            self.gate.record_outcome(decision, text, category=category)

            result = TurnResult(conversation, user_message, ai_message, decision)

            reason = self._auto_escalation_reason(conversation)
            if reason:
                await self._auto_escalate(conversation, reason, result)

            self.db.refresh(conversation)
            return result

    def _auto_escalation_reason(self, conversation: Conversation, now: Optional[datetime] = None) -> Optional[str]:
        now = now or datetime.utcnow()
        if (conversation.fallback_attempt_count or 0) > settings.FALLBACK_ATTEMPT_CEILING:
            return (
                f"Automatic escalation: {conversation.fallback_attempt_count} answers "
                f"without a confident reply"
            )
        if now - conversation.started_at > timedelta(hours=settings.CONVERSATION_STALENESS_HOURS):
            return (
                f"Automatic escalation: conversation unresolved for more than "
                f"{settings.CONVERSATION_STALENESS_HOURS} hours"
            )
        return None

    async def _auto_escalate(self, conversation: Conversation, reason: str, result: TurnResult):
        try:
            ticket_ref = await self.escalation_manager.escalate(conversation.id, additional_context=reason)
        except EscalationError as e:
            # Conversation stays active; the next turn tries again
            logger.warning("Automatic escalation of %s failed: %s", conversation.id, e.message)
            result.escalation_error = e.message
            return
        result.escalated = True
        result.ticket_ref = ticket_ref

    async def request_escalation(self, conversation_id: uuid.UUID, additional_context: Optional[str] = None) -> str:
        """Explicit escalation by the user; returns the ticket reference"""
        lock = conversation_lock(conversation_id)
        async with lock:
            return await self.escalation_manager.escalate(conversation_id, additional_context=additional_context)

    # Transitions

    async def resolve_conversation(self, conversation_id: uuid.UUID) -> Conversation:
        lock = conversation_lock(conversation_id)
        async with lock:
            conversation = self._get_active(conversation_id)
            return self._close(conversation, ConversationStatus.RESOLVED, ResolutionType.AI_RESOLVED)

    async def end_conversation(
        self,
        conversation_id: uuid.UUID,
        resolution_type: ResolutionType = ResolutionType.USER_LEFT
    ) -> Conversation:
        """End without escalation: ai_resolved -> resolved, user_left/timeout -> abandoned"""
        if resolution_type == ResolutionType.ESCALATED:
            raise InvalidInputError("Use escalation to end a conversation with a ticket")

        status = (
            ConversationStatus.RESOLVED
            if resolution_type == ResolutionType.AI_RESOLVED
            else ConversationStatus.ABANDONED
        )
        lock = conversation_lock(conversation_id)
        async with lock:
            conversation = self._get_active(conversation_id)
            return self._close(conversation, status, resolution_type)

    def expire_inactive_conversations(self, now: Optional[datetime] = None) -> int:
        """Abandon active conversations idle longer than the inactivity timeout"""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=settings.INACTIVITY_TIMEOUT_MINUTES)
        idle = self.db.query(Conversation).filter(
            Conversation.status == ConversationStatus.ACTIVE,
            Conversation.updated_at < cutoff
        ).all()

        for conversation in idle:
            self._close(
                conversation, ConversationStatus.ABANDONED, ResolutionType.TIMEOUT,
                reason="inactivity", commit=False, now=now
            )
        self.db.commit()

        if idle:
            logger.info("Expired %d inactive conversations", len(idle))
        return len(idle)

    def _close(
        self,
        conversation: Conversation,
        status: ConversationStatus,
        resolution_type: ResolutionType,
        reason: Optional[str] = None,
        commit: bool = True,
        now: Optional[datetime] = None
    ) -> Conversation:
        now = now or datetime.utcnow()
        conversation.status = status
        conversation.resolution_type = resolution_type
        conversation.ended_at = now
        log_audit_event(
            self.db,
            event_type=f"conversation_{status.value}",
            conversation_id=conversation.id,
            payload={"resolution_type": resolution_type.value, "reason": reason},
            commit=False
        )
        if commit:
            self.db.commit()
            self.db.refresh(conversation)
        return conversation

    # Ratings

    def rate_satisfaction(self, conversation_id: uuid.UUID, rating: int, was_helpful: bool) -> Conversation:
        if rating is None or not 1 <= rating <= 5:
            raise InvalidInputError("Rating must be between 1 and 5")
        conversation = self.get_conversation(conversation_id)
        conversation.satisfaction_rating = rating
        conversation.was_helpful = was_helpful
        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def mark_message_helpful(self, message_id: uuid.UUID, helpful: bool) -> ChatMessage:
        """
        Thumbs up/down on an ai message.

        The success for a knowledge answer is counted when it is served, so a
        first thumbs-down revokes it; later ratings only record the flag.
        """
        message = self.db.query(ChatMessage).filter(ChatMessage.id == message_id).first()
        if not message:
            raise NotFoundError(f"Message {message_id} not found")
        if message.sender_type != SenderType.AI:
            raise InvalidInputError("Only ai messages can be rated")

        revoke = not helpful and message.related_knowledge_id is not None and not message.success_revoked
        message.was_helpful = helpful
        if revoke:
            message.success_revoked = True
        self.db.commit()

        if revoke:
            self.store.revoke_success(message.related_knowledge_id)
        return message
