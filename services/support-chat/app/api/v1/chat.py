"""
Support Chat API
Conversations, turns, escalation and answer feedback
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional
import uuid

from app.core.database import get_db
from app.models.conversation import ResolutionType
from app.services.conversation_engine import ConversationEngine
from app.services.feedback_learning import FeedbackLearningPipeline

router = APIRouter()


class StartConversationRequest(BaseModel):
    user_id: str


class SendMessageRequest(BaseModel):
    message: str


class EscalateRequest(BaseModel):
    additional_context: Optional[str] = None


class EndConversationRequest(BaseModel):
    resolution_type: ResolutionType = ResolutionType.USER_LEFT


class RatingRequest(BaseModel):
    rating: int
    was_helpful: bool


class HelpfulRequest(BaseModel):
    helpful: bool


class FeedbackRequest(BaseModel):
    feedback_type: str  # incorrect | incomplete | unclear | outdated | other
    feedback_text: Optional[str] = None
    correct_answer: Optional[str] = None
    user_id: Optional[str] = None


def _conversation_with_messages(engine: ConversationEngine, conversation_id: uuid.UUID):
    conversation = engine.get_conversation(conversation_id)
    return {
        "conversation": conversation.to_dict(),
        "messages": [m.to_dict() for m in engine.get_messages(conversation_id)]
    }


@router.post("/conversations")
async def get_or_create_conversation(
    request: StartConversationRequest,
    db: Session = Depends(get_db)
):
    """
    Active conversation of the user, or a new one.
    A conversation idle for more than a day is closed and replaced.
    """
    engine = ConversationEngine(db)
    conversation = engine.get_or_create_active_conversation(request.user_id)
    return _conversation_with_messages(engine, conversation.id)


@router.post("/conversations/new")
async def start_conversation(
    request: StartConversationRequest,
    db: Session = Depends(get_db)
):
    engine = ConversationEngine(db)
    conversation = engine.start_conversation(request.user_id)
    return _conversation_with_messages(engine, conversation.id)


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: uuid.UUID, db: Session = Depends(get_db)):
    return _conversation_with_messages(ConversationEngine(db), conversation_id)


@router.get("/users/{user_id}/conversations")
async def get_user_conversations(user_id: str, limit: int = 10, db: Session = Depends(get_db)):
    conversations = ConversationEngine(db).get_user_conversations(user_id, limit=limit)
    return {"conversations": [c.to_dict() for c in conversations]}


@router.post("/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: uuid.UUID,
    request: SendMessageRequest,
    db: Session = Depends(get_db)
):
    """
    One user turn

    Returns the user message, the ai answer and, when the turn crossed an
    escalation limit, the ticket reference (or the escalation error).
    """
    engine = ConversationEngine(db)
    result = await engine.send_user_message(conversation_id, request.message)
    return result.to_dict()


@router.post("/conversations/{conversation_id}/escalate")
async def escalate_conversation(
    conversation_id: uuid.UUID,
    request: EscalateRequest,
    db: Session = Depends(get_db)
):
    engine = ConversationEngine(db)
    ticket_ref = await engine.request_escalation(conversation_id, request.additional_context)
    return {"ticket_ref": ticket_ref, "conversation": engine.get_conversation(conversation_id).to_dict()}


@router.post("/conversations/{conversation_id}/resolve")
async def resolve_conversation(conversation_id: uuid.UUID, db: Session = Depends(get_db)):
    conversation = await ConversationEngine(db).resolve_conversation(conversation_id)
    return conversation.to_dict()


@router.post("/conversations/{conversation_id}/end")
async def end_conversation(
    conversation_id: uuid.UUID,
    request: EndConversationRequest,
    db: Session = Depends(get_db)
):
    conversation = await ConversationEngine(db).end_conversation(conversation_id, request.resolution_type)
    return conversation.to_dict()


@router.post("/conversations/{conversation_id}/rating")
async def rate_conversation(
    conversation_id: uuid.UUID,
    request: RatingRequest,
    db: Session = Depends(get_db)
):
    conversation = ConversationEngine(db).rate_satisfaction(conversation_id, request.rating, request.was_helpful)
    return {
        "conversation_id": str(conversation.id),
        "satisfaction_rating": conversation.satisfaction_rating,
        "was_helpful": conversation.was_helpful
    }


@router.post("/messages/{message_id}/helpful")
async def mark_message_helpful(
    message_id: uuid.UUID,
    request: HelpfulRequest,
    db: Session = Depends(get_db)
):
    message = ConversationEngine(db).mark_message_helpful(message_id, request.helpful)
    return message.to_dict()


@router.post("/messages/{message_id}/feedback")
async def submit_feedback(
    message_id: uuid.UUID,
    request: FeedbackRequest,
    db: Session = Depends(get_db)
):
    """Negative feedback on an ai answer"""
    pipeline = FeedbackLearningPipeline(db)
    feedback = pipeline.record_negative_feedback(
        message_id,
        request.feedback_type,
        feedback_text=request.feedback_text,
        correct_answer=request.correct_answer,
        user_id=request.user_id
    )
    return feedback.to_dict()


@router.post("/feedback/{feedback_id}/regenerate")
async def regenerate_answer(feedback_id: uuid.UUID, db: Session = Depends(get_db)):
    message = await FeedbackLearningPipeline(db).regenerate_answer(feedback_id)
    return message.to_dict()


@router.post("/feedback/{feedback_id}/improved-helpful")
async def mark_improved_answer_helpful(
    feedback_id: uuid.UUID,
    request: HelpfulRequest,
    db: Session = Depends(get_db)
):
    pipeline = FeedbackLearningPipeline(db)
    queue_entry = pipeline.mark_improved_answer_helpful(feedback_id, request.helpful)
    return {
        "feedback": pipeline.get_feedback(feedback_id).to_dict(),
        "learning_queue_entry": queue_entry.to_dict() if queue_entry else None
    }


@router.get("/users/{user_id}/feedback")
async def get_feedback_history(user_id: str, limit: int = 20, db: Session = Depends(get_db)):
    history = FeedbackLearningPipeline(db).get_feedback_history(user_id, limit=limit)
    return {"feedback": [f.to_dict() for f in history]}


@router.post("/maintenance/expire-inactive")
async def expire_inactive_conversations(db: Session = Depends(get_db)):
    expired = ConversationEngine(db).expire_inactive_conversations()
    return {"expired_count": expired}
