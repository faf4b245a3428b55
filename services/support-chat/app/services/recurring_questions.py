"""
Recurring Question Tracker
Counts repeated questions answered outside the knowledge base to surface learning candidates
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import InvalidInputError
from app.models.learning import RecurringQuestion
from app.services.audit_service import log_audit_event
from app.services.knowledge_store import KnowledgeStore
from app.services.text_normalizer import normalize_text, unique_keywords, text_similarity

logger = logging.getLogger(__name__)

MAX_EXAMPLES = 10
MAX_SUCCESSFUL_RESPONSES = 5


def compute_learning_priority(ask_count: int, last_asked_at: datetime, now: Optional[datetime] = None) -> int:
    """ask_count x 10, plus 20 when asked within a day or 10 within a week"""
    now = now or datetime.utcnow()
    age = now - last_asked_at
    if age <= timedelta(days=1):
        recency_bonus = 20
    elif age <= timedelta(days=7):
        recency_bonus = 10
    else:
        recency_bonus = 0
    return ask_count * 10 + recency_bonus


class RecurringQuestionTracker:
    """Upserts RecurringQuestion rows keyed by normalized question text"""

    def __init__(self, db: Session, store: Optional[KnowledgeStore] = None):
        self.db = db
        self.store = store or KnowledgeStore(db)

    def track(
        self,
        question: str,
        category: str = "general",
        was_successful: bool = False,
        generated_answer: Optional[str] = None,
        confidence: Optional[float] = None
    ) -> RecurringQuestion:
        normalized = normalize_text(question)
        if not normalized:
            raise InvalidInputError("Cannot track an empty question")

        now = datetime.utcnow()
        recurring = self._get_or_create(normalized, category, now)

        examples = list(recurring.question_examples or [])
        phrasing = question.strip()
        if phrasing not in examples and len(examples) < MAX_EXAMPLES:
            examples.append(phrasing)
        recurring.question_examples = examples

        recurring.ask_count = (recurring.ask_count or 0) + 1
        recurring.last_asked_at = now
        if category and not recurring.category:
            recurring.category = category

        if was_successful and generated_answer:
            responses = list(recurring.successful_responses or [])
            if generated_answer not in responses:
                responses.append(generated_answer)
            recurring.successful_responses = responses[-MAX_SUCCESSFUL_RESPONSES:]

        if confidence is not None:
            samples = recurring.confidence_samples or 0
            previous = recurring.avg_confidence_score or 0.0
            recurring.avg_confidence_score = (previous * samples + confidence) / (samples + 1)
            recurring.confidence_samples = samples + 1

        recurring.learning_priority = compute_learning_priority(recurring.ask_count, now, now)

        newly_suggested = False
        if not recurring.suggested_for_learning and recurring.ask_count >= settings.RECURRING_LEARNING_THRESHOLD:
            if self.has_matching_knowledge(normalized):
                recurring.has_knowledge_entry = True
            else:
                recurring.suggested_for_learning = True
                newly_suggested = True

        self.db.commit()

        if newly_suggested:
            logger.info(
                "Recurring question suggested for learning after %d asks: %s",
                recurring.ask_count, normalized[:80]
            )
            log_audit_event(
                self.db,
                event_type="recurring_question_suggested",
                payload={
                    "recurring_question_id": str(recurring.id),
                    "question": normalized,
                    "ask_count": recurring.ask_count
                }
            )
        return recurring

    def _get_or_create(self, normalized: str, category: str, now: datetime) -> RecurringQuestion:
        recurring = self._find(normalized)
        if recurring:
            return recurring

        recurring = RecurringQuestion(
            question_normalized=normalized,
            question_examples=[],
            category=category,
            keywords=unique_keywords(normalized),
            ask_count=0,
            first_asked_at=now,
            last_asked_at=now,
            successful_responses=[],
            confidence_samples=0
        )
        self.db.add(recurring)
        try:
            self.db.flush()
        except IntegrityError:
            # Another request created the row first
            self.db.rollback()
            recurring = self._find(normalized)
        return recurring

    def _find(self, normalized: str) -> Optional[RecurringQuestion]:
        return self.db.query(RecurringQuestion).filter(
            RecurringQuestion.question_normalized == normalized
        ).first()

    def has_matching_knowledge(self, normalized: str) -> bool:
        """True when an active entry's pattern is at least as similar as the configured floor"""
        for entry in self.store.list_active():
            if text_similarity(entry.pattern, normalized) >= settings.RECURRING_SIMILARITY_FLOOR:
                return True
        return False

    def mark_learned(self, normalized: str, commit: bool = True):
        recurring = self._find(normalize_text(normalized))
        if recurring:
            recurring.has_knowledge_entry = True
            if commit:
                self.db.commit()
        return recurring

    def refresh_priorities(self, now: Optional[datetime] = None) -> int:
        """
        Recompute learning_priority against the current time so the recency
        bonus fades for questions that stopped coming in. Returns the number
        of rows whose priority changed.
        """
        now = now or datetime.utcnow()
        changed = 0
        for recurring in self.db.query(RecurringQuestion).all():
            priority = compute_learning_priority(recurring.ask_count or 0, recurring.last_asked_at, now)
            if priority != recurring.learning_priority:
                recurring.learning_priority = priority
                changed += 1
        if changed:
            self.db.commit()
            logger.info("Refreshed learning priority of %d recurring questions", changed)
        return changed

    def list_recurring(self, limit: int = 50) -> List[RecurringQuestion]:
        return self.db.query(RecurringQuestion).order_by(
            RecurringQuestion.ask_count.desc(),
            RecurringQuestion.last_asked_at.desc()
        ).limit(limit).all()

    def list_suggested_for_learning(self, limit: int = 20) -> List[RecurringQuestion]:
        self.refresh_priorities()
        return self.db.query(RecurringQuestion).filter(
            RecurringQuestion.suggested_for_learning == True,
            RecurringQuestion.has_knowledge_entry == False
        ).order_by(
            RecurringQuestion.learning_priority.desc(),
            RecurringQuestion.ask_count.desc()
        ).limit(limit).all()
