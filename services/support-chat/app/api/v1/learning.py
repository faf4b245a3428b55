"""
Learning API
Knowledge base maintenance, learning queue review, recurring questions and batch jobs
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional, List
import uuid

from app.core.database import get_db
from app.models.knowledge import KnowledgeSource
from app.models.learning import LearningQueueStatus
from app.services.feedback_learning import FeedbackLearningPipeline
from app.services.knowledge_matcher import KnowledgeMatcher
from app.services.knowledge_store import KnowledgeStore
from app.services.learning_jobs import LearningJobs
from app.services.recurring_questions import RecurringQuestionTracker

router = APIRouter()


class ManualEntryRequest(BaseModel):
    question: str
    answer: str
    reviewer: str
    category: str = "general"
    keywords: Optional[List[str]] = None
    priority: int = 0


class UpdateEntryRequest(BaseModel):
    answer: Optional[str] = None
    pattern: Optional[str] = None
    keywords: Optional[List[str]] = None
    category: Optional[str] = None
    confidence_threshold: Optional[float] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class ReviewRequest(BaseModel):
    reviewer: str
    notes: Optional[str] = None


class LearnRequest(BaseModel):
    auto_approve: bool = False


class TicketLearningRequest(BaseModel):
    question: str
    answer: str
    category: str = "general"
    auto_approve: Optional[bool] = None


# Knowledge base

@router.get("/knowledge")
async def list_knowledge(
    category: Optional[str] = None,
    source: Optional[KnowledgeSource] = None,
    is_active: Optional[bool] = None,
    db: Session = Depends(get_db)
):
    entries = KnowledgeStore(db).list_entries(category=category, source=source, is_active=is_active)
    return {"entries": [e.to_dict() for e in entries]}


@router.get("/knowledge/match")
async def match_knowledge(q: str, limit: int = 5, db: Session = Depends(get_db)):
    """Ranked knowledge matches for a question, as the chat would see them"""
    matches = KnowledgeMatcher(db).match(q, limit=limit)
    return {"matches": [{"entry": entry.to_dict(), "score": score} for entry, score in matches]}


@router.post("/knowledge")
async def add_manual_entry(request: ManualEntryRequest, db: Session = Depends(get_db)):
    entry = FeedbackLearningPipeline(db).add_manual_entry(
        question=request.question,
        answer=request.answer,
        reviewer=request.reviewer,
        category=request.category,
        keywords=request.keywords,
        priority=request.priority
    )
    return entry.to_dict()


@router.patch("/knowledge/{knowledge_id}")
async def update_knowledge(
    knowledge_id: uuid.UUID,
    request: UpdateEntryRequest,
    db: Session = Depends(get_db)
):
    entry = KnowledgeStore(db).update_entry(
        knowledge_id,
        answer=request.answer,
        pattern=request.pattern,
        keywords=request.keywords,
        category=request.category,
        confidence_threshold=request.confidence_threshold,
        priority=request.priority,
        is_active=request.is_active,
        change_source="manual"
    )
    return entry.to_dict()


@router.get("/knowledge/{knowledge_id}/history")
async def knowledge_history(knowledge_id: uuid.UUID, db: Session = Depends(get_db)):
    store = KnowledgeStore(db)
    store.get(knowledge_id)
    return {
        "history": [
            {
                "version": r.version,
                "pattern": r.pattern,
                "answer": r.answer,
                "change_source": r.change_source,
                "created_at": r.created_at.isoformat()
            }
            for r in store.get_history(knowledge_id)
        ]
    }


@router.post("/knowledge/{knowledge_id}/deactivate")
async def deactivate_knowledge(knowledge_id: uuid.UUID, db: Session = Depends(get_db)):
    entry = KnowledgeStore(db).deactivate(knowledge_id)
    return entry.to_dict()


# Learning queue

@router.get("/queue")
async def list_queue(
    status: Optional[LearningQueueStatus] = None,
    limit: int = 50,
    db: Session = Depends(get_db)
):
    entries = FeedbackLearningPipeline(db).list_queue(status=status, limit=limit)
    return {"entries": [e.to_dict() for e in entries]}


@router.post("/queue/{queue_id}/approve")
async def approve_queue_entry(queue_id: uuid.UUID, request: ReviewRequest, db: Session = Depends(get_db)):
    pipeline = FeedbackLearningPipeline(db)
    entry = pipeline.approve_entry(queue_id, request.reviewer, request.notes)
    return {
        "queue_entry": pipeline.get_queue_entry(queue_id).to_dict(),
        "knowledge_entry": entry.to_dict()
    }


@router.post("/queue/{queue_id}/reject")
async def reject_queue_entry(queue_id: uuid.UUID, request: ReviewRequest, db: Session = Depends(get_db)):
    queue_entry = FeedbackLearningPipeline(db).reject_entry(queue_id, request.reviewer, request.notes)
    return queue_entry.to_dict()


@router.post("/queue/{queue_id}/promote")
async def promote_queue_entry(queue_id: uuid.UUID, db: Session = Depends(get_db)):
    entry = FeedbackLearningPipeline(db).promote(queue_id)
    return entry.to_dict()


@router.post("/feedback/{feedback_id}/learn")
async def learn_from_feedback(feedback_id: uuid.UUID, request: LearnRequest, db: Session = Depends(get_db)):
    queue_entry = FeedbackLearningPipeline(db).create_learning_from_feedback(feedback_id, request.auto_approve)
    return queue_entry.to_dict()


@router.post("/recurring/{recurring_id}/learn")
async def learn_from_recurring(recurring_id: uuid.UUID, request: LearnRequest, db: Session = Depends(get_db)):
    queue_entry = FeedbackLearningPipeline(db).create_learning_from_recurring(recurring_id, request.auto_approve)
    return queue_entry.to_dict()


@router.post("/tickets/{ticket_id}/learn")
async def learn_from_ticket(ticket_id: str, request: TicketLearningRequest, db: Session = Depends(get_db)):
    queue_entry = FeedbackLearningPipeline(db).learn_from_ticket(
        ticket_id,
        question=request.question,
        answer=request.answer,
        category=request.category,
        auto_approve=request.auto_approve
    )
    return queue_entry.to_dict()


# Recurring questions

@router.get("/recurring")
async def list_recurring(limit: int = 50, db: Session = Depends(get_db)):
    questions = RecurringQuestionTracker(db).list_recurring(limit=limit)
    return {"questions": [q.to_dict() for q in questions]}


@router.get("/recurring/suggested")
async def list_suggested(limit: int = 20, db: Session = Depends(get_db)):
    questions = RecurringQuestionTracker(db).list_suggested_for_learning(limit=limit)
    return {"questions": [q.to_dict() for q in questions]}


# Batch jobs

@router.post("/jobs/run")
async def run_learning_job(days_back: int = 7, db: Session = Depends(get_db)):
    return LearningJobs(db).run_learning_job(days_back=days_back)


@router.post("/jobs/auto-learn")
async def auto_learn(db: Session = Depends(get_db)):
    return LearningJobs(db).auto_learn_from_success_pattern()


@router.post("/jobs/deactivate-low-performing")
async def deactivate_low_performing(db: Session = Depends(get_db)):
    return LearningJobs(db).deactivate_low_performing_knowledge()


@router.get("/analytics")
async def learning_analytics(days_back: int = 30, db: Session = Depends(get_db)):
    return LearningJobs(db).get_learning_analytics(days_back=days_back)


@router.get("/analytics/chat")
async def chat_analytics(days_back: int = 7, db: Session = Depends(get_db)):
    return LearningJobs(db).get_chat_analytics(days_back=days_back)


@router.get("/unresolved-topics")
async def unresolved_topics(limit: int = 10, db: Session = Depends(get_db)):
    return {"topics": LearningJobs(db).get_top_unresolved_topics(limit=limit)}
