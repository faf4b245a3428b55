"""
Feedback Learning Pipeline
Negative feedback -> improved answer -> learning queue -> knowledge entry

Queue entries are promoted only once approved (by a reviewer or by the
auto-approve policy). Promotion writes exactly one knowledge entry and marks
the queue entry consumed in the same commit.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import InvalidInputError, InvalidStateError, NotFoundError
from app.models.conversation import AnswerSource, ChatMessage, Conversation, SenderType
from app.models.knowledge import KnowledgeEntry, KnowledgeSource
from app.models.learning import (
    FeedbackDetail, FeedbackType, LearningQueueEntry, LearningQueueStatus,
    LearningSourceType, LearningStatus, LEARNING_STATUS_RANK, PromotionAction, RecurringQuestion,
)
from app.services.ai_client import get_ai_client
from app.services.audit_service import log_audit_event
from app.services.confidence_gate import build_history
from app.services.conversation_engine import commit_appended, conversation_lock
from app.services.knowledge_store import KnowledgeStore
from app.services.text_normalizer import normalize_text, unique_keywords

logger = logging.getLogger(__name__)

IMPROVED_ANSWER_PREFIX = "Here is an improved answer:\n\n"
IMPROVEMENT_APOLOGY = "Sorry, I couldn't come up with a better answer. You can ask me to forward this to our support team."
DEFAULT_IMPROVED_CONFIDENCE = 0.75
DEFAULT_LEARNED_THRESHOLD = 0.8

KNOWLEDGE_SOURCE_FOR_QUEUE = {
    LearningSourceType.FEEDBACK: KnowledgeSource.CHAT_LEARNING,
    LearningSourceType.PATTERN: KnowledgeSource.CHAT_LEARNING,
    LearningSourceType.TICKET: KnowledgeSource.TICKET_RESOLUTION,
    LearningSourceType.MANUAL: KnowledgeSource.MANUAL,
}


def improvement_prompt(question: str, feedback_context: str) -> str:
    return (
        f'The previous answer was not helpful. User feedback: "{feedback_context}".\n'
        f'Please give an improved, more detailed answer to the question: "{question}"'
    )


def advance_learning_status(feedback: FeedbackDetail, target: LearningStatus):
    """
    Move a feedback's learning status forward.

    rejected is reachable from pending or reviewed only; nothing leaves
    rejected, learned or auto_learned.
    """
    current = feedback.learning_status or LearningStatus.PENDING
    if current == target:
        return
    if target == LearningStatus.REJECTED:
        allowed = current in (LearningStatus.PENDING, LearningStatus.REVIEWED)
    else:
        allowed = (
            current != LearningStatus.REJECTED
            and LEARNING_STATUS_RANK[target] > LEARNING_STATUS_RANK[current]
        )
    if not allowed:
        raise InvalidStateError(
            f"Feedback {feedback.id} cannot move from {current.value} to {target.value}"
        )
    feedback.learning_status = target


class FeedbackLearningPipeline:
    """Turns corrections into knowledge through the learning queue"""

    def __init__(self, db: Session, responder=None, store: Optional[KnowledgeStore] = None):
        self.db = db
        self.responder = responder or get_ai_client()
        self.store = store or KnowledgeStore(db)

    # Feedback

    def get_feedback(self, feedback_id: uuid.UUID) -> FeedbackDetail:
        feedback = self.db.query(FeedbackDetail).filter(FeedbackDetail.id == feedback_id).first()
        if not feedback:
            raise NotFoundError(f"Feedback {feedback_id} not found")
        return feedback

    def record_negative_feedback(
        self,
        message_id: uuid.UUID,
        feedback_type: Union[FeedbackType, str],
        feedback_text: Optional[str] = None,
        correct_answer: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> FeedbackDetail:
        """
        Record that an ai answer was not helpful.

        Marks the message unhelpful and, for knowledge answers, turns the
        success counted when it was served into a failure (once per message).
        """
        try:
            feedback_type = FeedbackType(feedback_type)
        except ValueError:
            raise InvalidInputError(f"Unknown feedback type: {feedback_type}")
        for label, value in (("feedback_text", feedback_text), ("correct_answer", correct_answer)):
            if value is not None and len(value) > settings.MAX_MESSAGE_LENGTH:
                raise InvalidInputError(f"{label} exceeds {settings.MAX_MESSAGE_LENGTH} characters")

        message = self.db.query(ChatMessage).filter(ChatMessage.id == message_id).first()
        if not message:
            raise NotFoundError(f"Message {message_id} not found")
        if message.sender_type != SenderType.AI:
            raise InvalidInputError("Feedback can only be given on ai messages")

        question = self.db.query(ChatMessage).filter(
            ChatMessage.conversation_id == message.conversation_id,
            ChatMessage.sender_type == SenderType.USER,
            ChatMessage.sequence < message.sequence
        ).order_by(ChatMessage.sequence.desc()).first()

        revoke = message.related_knowledge_id is not None and not message.success_revoked

        feedback = FeedbackDetail(
            id=uuid.uuid4(),
            message_id=message.id,
            conversation_id=message.conversation_id,
            user_id=user_id,
            original_question=question.text if question else "",
            original_answer=message.text,
            related_knowledge_id=message.related_knowledge_id,
            feedback_type=feedback_type,
            feedback_text=(feedback_text or "").strip() or None,
            correct_answer=(correct_answer or "").strip() or None,
            retry_attempted=False,
            learning_status=LearningStatus.PENDING
        )
        message.was_helpful = False
        if revoke:
            message.success_revoked = True
        self.db.add(feedback)
        self.db.commit()
        self.db.refresh(feedback)

        if revoke:
            self.store.revoke_success(message.related_knowledge_id)

        logger.info("Negative feedback %s (%s) on message %s", feedback.id, feedback_type.value, message.id)
        return feedback

    async def regenerate_answer(self, feedback_id: uuid.UUID) -> ChatMessage:
        """
        Ask the responder for a better answer and append it to the conversation.

        Returns the existing improved message when one was already generated.
        A responder failure yields an apology and leaves improved_answer unset.
        """
        feedback = self.get_feedback(feedback_id)
        if feedback.improved_answer_message_id:
            return feedback.improved_message

        lock = conversation_lock(feedback.conversation_id)
        async with lock:
            conversation = self.db.query(Conversation).filter(
                Conversation.id == feedback.conversation_id
            ).first()
            if conversation.is_terminal:
                raise InvalidStateError(
                    f"Conversation {conversation.id} is {conversation.status.value}"
                )

            messages = self.db.query(ChatMessage).filter(
                ChatMessage.conversation_id == conversation.id
            ).order_by(ChatMessage.sequence).all()
            context = feedback.feedback_text or feedback.feedback_type.value
            prompt = improvement_prompt(feedback.original_question, context)

            reply = None
            try:
                reply = await asyncio.wait_for(
                    self.responder.generate_chat_response(str(conversation.id), prompt, build_history(messages)),
                    timeout=settings.AI_GATEWAY_TIMEOUT
                )
            except asyncio.TimeoutError:
                logger.warning("Improved answer for feedback %s timed out", feedback.id)
            except Exception as e:
                logger.warning("Improved answer for feedback %s failed: %s", feedback.id, e)

            metadata = {"feedback_id": str(feedback.id), "original_message_id": str(feedback.message_id)}
            improved_text = (reply or {}).get("response") or ""
            if not reply or reply.get("fallback") or not improved_text.strip():
                message = ChatMessage.ai(
                    conversation,
                    IMPROVEMENT_APOLOGY,
                    settings.FALLBACK_CONFIDENCE,
                    AnswerSource.IMPROVED_FROM_FEEDBACK,
                    metadata={**metadata, "fallback": True}
                )
                self.db.add(message)
                feedback.retry_attempted = True
                commit_appended(self.db, conversation.id)
                return message

            improved_text = improved_text.strip()
            confidence = reply.get("confidence")
            message = ChatMessage.ai(
                conversation,
                f"{IMPROVED_ANSWER_PREFIX}{improved_text}",
                DEFAULT_IMPROVED_CONFIDENCE if confidence is None else float(confidence),
                AnswerSource.IMPROVED_FROM_FEEDBACK,
                metadata=metadata
            )
            self.db.add(message)
            feedback.retry_attempted = True
            feedback.improved_answer = improved_text
            feedback.improved_answer_message_id = message.id
            commit_appended(self.db, conversation.id)
            self.db.refresh(message)

            logger.info("Generated improved answer %s for feedback %s", message.id, feedback.id)
            return message

    def mark_improved_answer_helpful(self, feedback_id: uuid.UUID, helpful: bool) -> Optional[LearningQueueEntry]:
        """
        Rate the improved answer. A helpful one is queued for learning,
        auto-approved when LEARNING_AUTO_APPROVE is on.
        """
        feedback = self.get_feedback(feedback_id)
        if not feedback.improved_answer:
            raise InvalidStateError(f"Feedback {feedback_id} has no improved answer to rate")

        feedback.improved_answer_helpful = helpful
        if feedback.improved_message is not None:
            feedback.improved_message.was_helpful = helpful
        self.db.commit()

        if not helpful:
            return None
        return self.create_learning_from_feedback(feedback.id, auto_approve=settings.LEARNING_AUTO_APPROVE)

    def get_feedback_history(self, user_id: str, limit: int = 20) -> List[FeedbackDetail]:
        return self.db.query(FeedbackDetail).filter(
            FeedbackDetail.user_id == user_id
        ).order_by(FeedbackDetail.created_at.desc()).limit(limit).all()

    # Learning queue

    def get_queue_entry(self, queue_id: uuid.UUID) -> LearningQueueEntry:
        queue_entry = self.db.query(LearningQueueEntry).filter(LearningQueueEntry.id == queue_id).first()
        if not queue_entry:
            raise NotFoundError(f"Learning queue entry {queue_id} not found")
        return queue_entry

    def list_queue(self, status: Optional[LearningQueueStatus] = None, limit: int = 50) -> List[LearningQueueEntry]:
        query = self.db.query(LearningQueueEntry)
        if status:
            query = query.filter(LearningQueueEntry.status == status)
        return query.order_by(
            LearningQueueEntry.priority.desc(),
            LearningQueueEntry.created_at.desc()
        ).limit(limit).all()

    def create_learning_from_feedback(self, feedback_id: uuid.UUID, auto_approve: bool = False) -> LearningQueueEntry:
        """Queue the improved (or user-corrected) answer of a feedback"""
        feedback = self.get_feedback(feedback_id)
        answer = feedback.improved_answer or feedback.correct_answer
        if not answer:
            raise InvalidStateError(f"Feedback {feedback_id} has no answer to learn from")
        if not normalize_text(feedback.original_question):
            raise InvalidStateError(f"Feedback {feedback_id} has no question to learn from")

        category = "general"
        if feedback.related_knowledge_id:
            related = self.db.get(KnowledgeEntry, feedback.related_knowledge_id)
            if related is not None:
                category = related.category

        confidence = DEFAULT_IMPROVED_CONFIDENCE
        if feedback.improved_answer and feedback.improved_message is not None:
            confidence = feedback.improved_message.confidence_score

        if feedback.learning_status == LearningStatus.PENDING:
            advance_learning_status(feedback, LearningStatus.REVIEWED)

        return self._enqueue(
            LearningSourceType.FEEDBACK,
            str(feedback.id),
            question=feedback.original_question,
            answer=answer,
            category=category,
            confidence=confidence,
            priority=0,
            auto_approve=auto_approve
        )

    def create_learning_from_recurring(self, recurring_id: uuid.UUID, auto_approve: bool = False) -> LearningQueueEntry:
        """Queue the latest successful generative answer of a recurring question"""
        recurring = self.db.query(RecurringQuestion).filter(RecurringQuestion.id == recurring_id).first()
        if not recurring:
            raise NotFoundError(f"Recurring question {recurring_id} not found")
        if not recurring.successful_responses:
            raise InvalidStateError(f"Recurring question {recurring_id} has no successful answer to learn from")

        examples = recurring.question_examples or []
        return self._enqueue(
            LearningSourceType.PATTERN,
            str(recurring.id),
            question=examples[0] if examples else recurring.question_normalized,
            answer=recurring.successful_responses[-1],
            category=recurring.category or "general",
            confidence=recurring.avg_confidence_score or 0.0,
            priority=recurring.learning_priority or 0,
            auto_approve=auto_approve
        )

    def learn_from_ticket(
        self,
        ticket_id: str,
        question: str,
        answer: str,
        category: str = "general",
        auto_approve: Optional[bool] = None
    ) -> LearningQueueEntry:
        """Queue the resolution of a solved ticket"""
        if not ticket_id or not question or not question.strip() or not answer or not answer.strip():
            raise InvalidInputError("ticket_id, question and answer are required")
        return self._enqueue(
            LearningSourceType.TICKET,
            str(ticket_id),
            question=question.strip(),
            answer=answer.strip(),
            category=category,
            confidence=DEFAULT_LEARNED_THRESHOLD,
            priority=0,
            auto_approve=settings.LEARNING_AUTO_APPROVE if auto_approve is None else auto_approve
        )

    def add_manual_entry(
        self,
        question: str,
        answer: str,
        reviewer: str,
        category: str = "general",
        keywords: Optional[List[str]] = None,
        priority: int = 0
    ) -> KnowledgeEntry:
        """Reviewer-authored knowledge, approved and promoted at once"""
        if not question or not question.strip() or not answer or not answer.strip():
            raise InvalidInputError("question and answer are required")
        if not reviewer:
            raise InvalidInputError("reviewer is required")

        queue_entry = self._enqueue(
            LearningSourceType.MANUAL,
            None,
            question=question.strip(),
            answer=answer.strip(),
            category=category,
            confidence=DEFAULT_LEARNED_THRESHOLD,
            priority=priority,
            keywords=keywords,
            auto_approve=False
        )
        return self.approve_entry(queue_entry.id, reviewer)

    def _enqueue(
        self,
        source_type: LearningSourceType,
        source_id: Optional[str],
        question: str,
        answer: str,
        category: str,
        confidence: float,
        priority: int,
        auto_approve: bool,
        keywords: Optional[List[str]] = None
    ) -> LearningQueueEntry:
        """
        One queue entry per source. Re-queuing a source returns its existing
        entry; auto_approve then only promotes a still pending one.
        """
        if not normalize_text(question):
            raise InvalidInputError("Learning candidates need a question with matchable text")

        queue_entry = None
        if source_id is not None:
            queue_entry = self._find_queue_entry(source_type, source_id)

        if queue_entry is None:
            queue_entry = LearningQueueEntry(
                id=uuid.uuid4(),
                source_type=source_type,
                source_id=source_id,
                question_pattern=question,
                answer_template=answer,
                category=category or "general",
                keywords=[kw.lower() for kw in keywords] if keywords else unique_keywords(question),
                confidence_score=min(max(confidence or 0.0, 0.0), 1.0),
                priority=priority,
                status=LearningQueueStatus.PENDING
            )
            self.db.add(queue_entry)
            try:
                self.db.flush()
            except IntegrityError:
                # Same source queued concurrently
                self.db.rollback()
                queue_entry = self._find_queue_entry(source_type, source_id)
            else:
                logger.info("Queued %s learning candidate %s", source_type.value, queue_entry.id)

        if auto_approve and queue_entry.status == LearningQueueStatus.PENDING:
            queue_entry.status = LearningQueueStatus.AUTO_APPROVED
            queue_entry.reviewed_at = datetime.utcnow()
            self._promote(queue_entry)

        self.db.commit()
        self.db.refresh(queue_entry)
        return queue_entry

    def _find_queue_entry(self, source_type: LearningSourceType, source_id: str) -> Optional[LearningQueueEntry]:
        return self.db.query(LearningQueueEntry).filter(
            LearningQueueEntry.source_type == source_type,
            LearningQueueEntry.source_id == source_id
        ).first()

    def approve_entry(self, queue_id: uuid.UUID, reviewer: str, notes: Optional[str] = None) -> KnowledgeEntry:
        """Approve a pending entry and promote it in the same commit"""
        queue_entry = self.get_queue_entry(queue_id)
        if queue_entry.status == LearningQueueStatus.REJECTED:
            raise InvalidStateError(f"Learning queue entry {queue_id} was rejected")

        if queue_entry.status == LearningQueueStatus.PENDING:
            queue_entry.status = LearningQueueStatus.APPROVED
            queue_entry.reviewed_by = reviewer
            queue_entry.reviewed_at = datetime.utcnow()
            queue_entry.review_notes = notes

        entry = self._promote(queue_entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def reject_entry(self, queue_id: uuid.UUID, reviewer: str, reason: Optional[str] = None) -> LearningQueueEntry:
        queue_entry = self.get_queue_entry(queue_id)
        if queue_entry.status == LearningQueueStatus.REJECTED:
            return queue_entry
        if queue_entry.status != LearningQueueStatus.PENDING:
            raise InvalidStateError(
                f"Learning queue entry {queue_id} is {queue_entry.status.value} and cannot be rejected"
            )

        queue_entry.status = LearningQueueStatus.REJECTED
        queue_entry.reviewed_by = reviewer
        queue_entry.reviewed_at = datetime.utcnow()
        queue_entry.review_notes = reason

        if queue_entry.source_type == LearningSourceType.FEEDBACK:
            feedback = self._source_feedback(queue_entry)
            if feedback is not None:
                advance_learning_status(feedback, LearningStatus.REJECTED)
                feedback.reviewed_by = reviewer

        self.db.commit()
        self.db.refresh(queue_entry)
        logger.info("Learning queue entry %s rejected by %s", queue_entry.id, reviewer)
        return queue_entry

    def promote(self, queue_id: uuid.UUID) -> KnowledgeEntry:
        """Write the knowledge entry for an approved queue entry (idempotent)"""
        queue_entry = self.get_queue_entry(queue_id)
        entry = self._promote(queue_entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def _promote(self, queue_entry: LearningQueueEntry) -> KnowledgeEntry:
        """
        Create or update exactly one knowledge entry. Does not commit; the
        caller commits the knowledge write together with the consumed flag.
        """
        if not queue_entry.is_approved:
            raise InvalidStateError(
                f"Learning queue entry {queue_entry.id} is {queue_entry.status.value}, not approved"
            )
        if queue_entry.knowledge_entry_id:
            return self.store.get(queue_entry.knowledge_entry_id)

        existing = self.store.find_by_pattern(queue_entry.question_pattern)
        if existing is not None:
            entry = self.store.update_entry(
                existing.id,
                answer=queue_entry.answer_template,
                change_source="learning_queue",
                commit=False
            )
            action = PromotionAction.UPDATED
        else:
            entry = self.store.create_entry(
                pattern=queue_entry.question_pattern,
                answer=queue_entry.answer_template,
                category=queue_entry.category,
                keywords=queue_entry.keywords,
                source=KNOWLEDGE_SOURCE_FOR_QUEUE[queue_entry.source_type],
                source_id=str(queue_entry.id),
                confidence_threshold=queue_entry.confidence_score or DEFAULT_LEARNED_THRESHOLD,
                priority=queue_entry.priority or 0,
                language=queue_entry.language,
                initial_success_count=self._evidence_count(queue_entry),
                commit=False
            )
            action = PromotionAction.CREATED

        now = datetime.utcnow()
        queue_entry.knowledge_entry_id = entry.id
        queue_entry.promotion_action = action
        queue_entry.consumed_at = now

        if queue_entry.source_type == LearningSourceType.FEEDBACK:
            feedback = self._source_feedback(queue_entry)
            if feedback is not None:
                target = (
                    LearningStatus.AUTO_LEARNED
                    if queue_entry.status == LearningQueueStatus.AUTO_APPROVED
                    else LearningStatus.LEARNED
                )
                advance_learning_status(feedback, target)
                feedback.learned_at = now
                feedback.reviewed_by = queue_entry.reviewed_by
        elif queue_entry.source_type == LearningSourceType.PATTERN:
            recurring = self._source_recurring(queue_entry)
            if recurring is not None:
                recurring.has_knowledge_entry = True

        log_audit_event(
            self.db,
            event_type="knowledge_promoted",
            knowledge_entry_id=entry.id,
            payload={
                "queue_id": str(queue_entry.id),
                "source_type": queue_entry.source_type.value,
                "action": action.value,
                "version": entry.version
            },
            commit=False
        )
        logger.info(
            "Promoted learning queue entry %s: %s knowledge entry %s",
            queue_entry.id, action.value, entry.id
        )
        return entry

    def _evidence_count(self, queue_entry: LearningQueueEntry) -> int:
        """Successes observed before the entry existed"""
        if queue_entry.source_type == LearningSourceType.PATTERN:
            recurring = self._source_recurring(queue_entry)
            return len(recurring.successful_responses or []) if recurring is not None else 1
        return 1

    def _source_feedback(self, queue_entry: LearningQueueEntry) -> Optional[FeedbackDetail]:
        try:
            feedback_id = uuid.UUID(queue_entry.source_id)
        except (TypeError, ValueError):
            return None
        return self.db.query(FeedbackDetail).filter(FeedbackDetail.id == feedback_id).first()

    def _source_recurring(self, queue_entry: LearningQueueEntry) -> Optional[RecurringQuestion]:
        try:
            recurring_id = uuid.UUID(queue_entry.source_id)
        except (TypeError, ValueError):
            return None
        return self.db.query(RecurringQuestion).filter(RecurringQuestion.id == recurring_id).first()
