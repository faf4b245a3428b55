"""
Learning batch jobs
Periodic auto-learning, knowledge clean-up and learning analytics.
Every job is idempotent and safe to run on any cadence.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.conversation import ChatMessage, Conversation, ConversationStatus, SenderType
from app.models.knowledge import KnowledgeEntry
from app.models.learning import FeedbackDetail, LearningQueueEntry, LearningQueueStatus, RecurringQuestion
from app.services.audit_service import log_audit_event
from app.services.feedback_learning import FeedbackLearningPipeline
from app.services.knowledge_store import KnowledgeStore
from app.services.recurring_questions import RecurringQuestionTracker

logger = logging.getLogger(__name__)

QUEUE_BACKLOG_WARNING = 10
TOPIC_LENGTH = 100


def _counts_by(db: Session, column, *filters) -> Dict[str, int]:
    rows = db.query(column, func.count()).filter(*filters).group_by(column).all()
    return {
        (key.value if hasattr(key, "value") else str(key)): count
        for key, count in rows
        if key is not None
    }


class LearningJobs:
    def __init__(
        self,
        db: Session,
        pipeline: Optional[FeedbackLearningPipeline] = None,
        store: Optional[KnowledgeStore] = None,
        tracker: Optional[RecurringQuestionTracker] = None
    ):
        self.db = db
        self.store = store or KnowledgeStore(db)
        self.tracker = tracker or RecurringQuestionTracker(db, store=self.store)
        self.pipeline = pipeline or FeedbackLearningPipeline(db, store=self.store)

    def auto_learn_from_success_pattern(self) -> Dict[str, int]:
        """
        Promote recurring questions that keep getting good generative answers.

        Candidates are suggested for learning, have no knowledge entry yet and
        at least AUTO_LEARN_MIN_SUCCESSES successful answers.
        """
        self.tracker.refresh_priorities()
        candidates = self.db.query(RecurringQuestion).filter(
            RecurringQuestion.suggested_for_learning == True,
            RecurringQuestion.has_knowledge_entry == False
        ).order_by(RecurringQuestion.learning_priority.desc(), RecurringQuestion.id).all()

        learned_count = 0
        questions_processed = 0
        for recurring in candidates:
            if len(recurring.successful_responses or []) < settings.AUTO_LEARN_MIN_SUCCESSES:
                continue
            questions_processed += 1

            if self.tracker.has_matching_knowledge(recurring.question_normalized):
                recurring.has_knowledge_entry = True
                self.db.commit()
                continue

            queue_entry = self.pipeline.create_learning_from_recurring(recurring.id, auto_approve=True)
            if queue_entry.knowledge_entry_id and queue_entry.consumed_at:
                learned_count += 1

        logger.info(
            "Auto-learned %d knowledge entries from %d recurring questions",
            learned_count, questions_processed
        )
        return {"learned_count": learned_count, "questions_processed": questions_processed}

    def deactivate_low_performing_knowledge(self) -> Dict[str, int]:
        """Deactivate active entries whose success rate stays under the floor"""
        entries = self.store.list_active()
        deactivated_count = 0
        for entry in entries:
            rated = (entry.success_count or 0) + (entry.failure_count or 0)
            if rated < settings.DEACTIVATION_MIN_SAMPLES:
                continue
            if entry.success_rate >= settings.DEACTIVATION_SUCCESS_FLOOR:
                continue

            self.store.deactivate(entry.id, commit=False)
            log_audit_event(
                self.db,
                event_type="knowledge_deactivated",
                knowledge_entry_id=entry.id,
                payload={"success_rate": round(entry.success_rate, 2), "rated_uses": rated},
                commit=False
            )
            deactivated_count += 1
        self.db.commit()

        if deactivated_count:
            logger.info("Deactivated %d low-performing knowledge entries", deactivated_count)
        return {"deactivated_count": deactivated_count, "entries_checked": len(entries)}

    def get_learning_analytics(self, days_back: int = 30) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(days=days_back)
        return {
            "days_back": days_back,
            "feedback_by_type": _counts_by(
                self.db, FeedbackDetail.feedback_type, FeedbackDetail.created_at >= since
            ),
            "feedback_by_learning_status": _counts_by(
                self.db, FeedbackDetail.learning_status, FeedbackDetail.created_at >= since
            ),
            "queue_by_status": _counts_by(
                self.db, LearningQueueEntry.status, LearningQueueEntry.created_at >= since
            ),
            "knowledge_by_source": _counts_by(
                self.db, KnowledgeEntry.source, KnowledgeEntry.is_active == True
            ),
            "answers_by_source": _counts_by(
                self.db, ChatMessage.answer_source,
                ChatMessage.sender_type == SenderType.AI,
                ChatMessage.created_at >= since
            ),
            "recurring_suggested": self.db.query(RecurringQuestion).filter(
                RecurringQuestion.suggested_for_learning == True,
                RecurringQuestion.has_knowledge_entry == False
            ).count(),
        }

    def get_chat_analytics(self, days_back: int = 7) -> Dict[str, Any]:
        """Conversation outcomes for conversations started in the last `days_back` days"""
        since = datetime.utcnow() - timedelta(days=days_back)
        window = Conversation.started_at >= since

        by_status = _counts_by(self.db, Conversation.status, window)
        total = sum(by_status.values())
        resolved = by_status.get(ConversationStatus.RESOLVED.value, 0)
        escalated = by_status.get(ConversationStatus.ESCALATED.value, 0)

        avg_satisfaction, avg_messages = self.db.query(
            func.avg(Conversation.satisfaction_rating),
            func.avg(Conversation.message_count)
        ).filter(window).one()

        return {
            "days_back": days_back,
            "total_conversations": total,
            "by_status": by_status,
            "by_resolution_type": _counts_by(self.db, Conversation.resolution_type, window),
            "resolved_conversations": resolved,
            "escalated_conversations": escalated,
            "success_rate": round(resolved * 100.0 / total, 1) if total else 0.0,
            "escalation_rate": round(escalated * 100.0 / total, 1) if total else 0.0,
            "avg_satisfaction": round(float(avg_satisfaction), 2) if avg_satisfaction is not None else None,
            "avg_messages_per_conversation": round(float(avg_messages), 1) if avg_messages is not None else 0.0,
        }

    def get_top_unresolved_topics(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent escalated conversations with the question that opened them"""
        conversations = self.db.query(Conversation).filter(
            Conversation.status == ConversationStatus.ESCALATED
        ).order_by(Conversation.started_at.desc(), Conversation.id).limit(limit).all()

        topics = []
        for conversation in conversations:
            first_question = self.db.query(ChatMessage).filter(
                ChatMessage.conversation_id == conversation.id,
                ChatMessage.sender_type == SenderType.USER
            ).order_by(ChatMessage.sequence).first()
            topics.append({
                "conversation_id": str(conversation.id),
                "topic": first_question.text[:TOPIC_LENGTH] if first_question else "Unknown",
                "escalated_at": conversation.ended_at.isoformat() if conversation.ended_at else None,
                "ticket_ref": conversation.escalated_ticket_ref,
            })
        return topics

    def run_learning_job(self, days_back: int = 7) -> Dict[str, Any]:
        """Run all steps in order; a failing step is reported and the rest still run"""
        logger.info("Learning job started")
        results: Dict[str, Any] = {"timestamp": datetime.utcnow().isoformat(), "steps": []}

        steps = [
            ("auto_learn_from_success_pattern", self.auto_learn_from_success_pattern),
            ("deactivate_low_performing_knowledge", self.deactivate_low_performing_knowledge),
            ("get_learning_analytics", lambda: {"analytics": self.get_learning_analytics(days_back)}),
            ("check_learning_queue", self._check_learning_queue),
        ]
        for name, step in steps:
            try:
                outcome = step()
            except Exception as e:
                self.db.rollback()
                logger.exception("Learning job step %s failed", name)
                results["steps"].append({"step": name, "status": "error", "error": str(e)})
                continue
            results["steps"].append({"step": name, "status": "success", **outcome})

        logger.info("Learning job finished")
        return results

    def _check_learning_queue(self) -> Dict[str, int]:
        pending = self.db.query(LearningQueueEntry).filter(
            LearningQueueEntry.status == LearningQueueStatus.PENDING
        ).count()
        if pending > QUEUE_BACKLOG_WARNING:
            logger.warning("%d learning queue entries waiting for review", pending)
        return {"pending_items": pending}
