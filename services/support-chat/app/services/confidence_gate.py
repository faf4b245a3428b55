"""
Confidence Gate
Decides between a knowledge base answer, a generative answer and a canned fallback
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.conversation import AnswerSource, ChatMessage, Conversation, SenderType
from app.models.knowledge import KnowledgeEntry
from app.services.ai_client import get_ai_client
from app.services.knowledge_store import KnowledgeStore
from app.services.recurring_questions import RecurringQuestionTracker
from app.services.text_normalizer import normalize_text

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_RESPONSES = [
    "That's an interesting question. Let me see how I can best help you...",
    "Hmm, I'm not quite sure about that. Could you give me a few more details?",
    "I understand your concern, but I may need more information to help you properly.",
]

CLARIFYING_PROMPT = "\n\nI'm not entirely sure about this answer. Was this helpful?"

DEFAULT_GENERATIVE_CONFIDENCE = 0.85


def low_confidence_response(attempt_count: int) -> str:
    """Stock phrasing for the given fallback attempt, clamped at the last one"""
    index = min(max(attempt_count, 0), len(LOW_CONFIDENCE_RESPONSES) - 1)
    return LOW_CONFIDENCE_RESPONSES[index]


def build_history(messages: List[ChatMessage], limit: Optional[int] = None) -> List[Dict[str, str]]:
    """Last `limit` non-system turns as role/content pairs"""
    limit = settings.HISTORY_TURN_LIMIT if limit is None else limit
    turns = [m for m in messages if m.sender_type != SenderType.SYSTEM]
    if limit <= 0:
        return []
    return [
        {
            "role": "user" if m.sender_type == SenderType.USER else "assistant",
            "content": m.text
        }
        for m in turns[-limit:]
    ]


class AnswerDecision:
    """Outcome of the gate for one user turn"""
    def __init__(
        self,
        text: str,
        confidence: float,
        source: AnswerSource,
        related_knowledge_id: Optional[uuid.UUID] = None,
        match_score: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        self.text = text
        self.confidence = confidence
        self.source = source
        self.related_knowledge_id = related_knowledge_id
        self.match_score = match_score
        self.metadata = metadata or {}

    @property
    def is_fallback(self) -> bool:
        return self.source == AnswerSource.GENERATIVE_FALLBACK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "source": self.source.value,
            "related_knowledge_id": str(self.related_knowledge_id) if self.related_knowledge_id else None
        }


class ConfidenceGate:
    """Answer policy for a single user turn"""

    def __init__(
        self,
        db: Session,
        responder=None,
        store: Optional[KnowledgeStore] = None,
        tracker: Optional[RecurringQuestionTracker] = None
    ):
        self.db = db
        self.responder = responder or get_ai_client()
        self.store = store or KnowledgeStore(db)
        self.tracker = tracker or RecurringQuestionTracker(db, store=self.store)

    async def decide(
        self,
        conversation: Conversation,
        matches: List[Tuple[KnowledgeEntry, float]],
        history: List[ChatMessage],
        user_message: str
    ) -> AnswerDecision:
        """
        Pick the answer for a turn

        - top match with success rate strictly above the threshold → knowledge base
        - otherwise → generative responder, canned fallback on failure
        - knowledge base answers below the low-confidence line ask for feedback
        """
        top = matches[0] if matches else None

        if top is not None and top[0].success_rate > settings.KB_SUCCESS_RATE_THRESHOLD:
            entry, score = top
            decision = AnswerDecision(
                text=entry.answer,
                confidence=entry.confidence_threshold,
                source=AnswerSource.KNOWLEDGE_BASE,
                related_knowledge_id=entry.id,
                match_score=score,
                metadata={"knowledge_version": entry.version, "success_rate": round(entry.success_rate, 2)}
            )
            logger.debug("Answering from knowledge entry %s (success rate %.1f)", entry.id, entry.success_rate)
        else:
            decision = await self._generate(conversation, history, user_message)

        if decision.source == AnswerSource.KNOWLEDGE_BASE and decision.confidence < settings.LOW_CONFIDENCE_THRESHOLD:
            decision.text += CLARIFYING_PROMPT

        return decision

    async def _generate(
        self,
        conversation: Conversation,
        history: List[ChatMessage],
        user_message: str
    ) -> AnswerDecision:
        reply = None
        try:
            reply = await asyncio.wait_for(
                self.responder.generate_chat_response(
                    str(conversation.id),
                    user_message,
                    build_history(history)
                ),
                timeout=settings.AI_GATEWAY_TIMEOUT
            )
        except asyncio.TimeoutError:
            logger.warning("Generative responder timed out for conversation %s", conversation.id)
        except Exception as e:
            logger.warning("Generative responder failed for conversation %s: %s", conversation.id, e)

        if not reply or reply.get("fallback") or not (reply.get("response") or "").strip():
            return AnswerDecision(
                text=low_confidence_response(conversation.fallback_attempt_count or 0),
                confidence=settings.FALLBACK_CONFIDENCE,
                source=AnswerSource.GENERATIVE_FALLBACK
            )

        confidence = reply.get("confidence")
        if confidence is None:
            confidence = DEFAULT_GENERATIVE_CONFIDENCE
        return AnswerDecision(
            text=reply["response"].strip(),
            confidence=float(confidence),
            source=AnswerSource.GENERATIVE,
            metadata={"model": reply.get("model_used", "unknown")}
        )

    def record_outcome(self, decision: AnswerDecision, question: str, category: str = "general"):
        """
        Side effects of a served answer. Call only after the ai message is committed.

        Tracking failures are logged and never reach the user.
        """
        if decision.source == AnswerSource.KNOWLEDGE_BASE and decision.related_knowledge_id:
            self.store.track_usage(decision.related_knowledge_id, was_successful=True)
        elif decision.source == AnswerSource.GENERATIVE and normalize_text(question):
            try:
                self.tracker.track(
                    question,
                    category=category,
                    was_successful=decision.confidence > settings.GENERATIVE_SUCCESS_CONFIDENCE,
                    generated_answer=decision.text,
                    confidence=decision.confidence
                )
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning("Recurring question tracking failed: %s", e)
