"""
Tests for the periodic learning jobs
"""
from datetime import datetime, timedelta

from app.models.audit import AuditEvent
from app.models.knowledge import KnowledgeEntry, KnowledgeSource
from app.models.conversation import ChatMessage, Conversation, ConversationStatus, ResolutionType
from app.models.learning import LearningQueueStatus, RecurringQuestion
from app.services.feedback_learning import FeedbackLearningPipeline
from app.services.learning_jobs import LearningJobs
from tests.conftest import FakeResponder


def build_jobs(db_session):
    return LearningJobs(db_session, pipeline=FeedbackLearningPipeline(db_session, responder=FakeResponder()))


def _recurring(db_session, question, responses, suggested=True, priority=30):
    recurring = RecurringQuestion(
        question_normalized=question,
        question_examples=[question.capitalize() + "?"],
        category="account",
        keywords=[],
        ask_count=3,
        successful_responses=responses,
        avg_confidence_score=0.85,
        learning_priority=priority,
        suggested_for_learning=suggested,
    )
    db_session.add(recurring)
    db_session.commit()
    return recurring


def test_auto_learn_promotes_well_answered_recurring_questions(db_session):
    learnable = _recurring(db_session, "wie lösche ich mein konto", ["a1", "a2", "Settings > Delete account"])
    _recurring(db_session, "wo finde ich rechnungen", ["only one", "two"])
    _recurring(db_session, "event verschieben", ["x", "y", "z"], suggested=False)
    jobs = build_jobs(db_session)

    result = jobs.auto_learn_from_success_pattern()

    assert result == {"learned_count": 1, "questions_processed": 1}
    entry = db_session.query(KnowledgeEntry).one()
    assert entry.pattern == "Wie lösche ich mein konto?"
    assert entry.answer == "Settings > Delete account"
    assert entry.source == KnowledgeSource.CHAT_LEARNING
    assert entry.category == "account"
    assert entry.success_count == 3
    db_session.refresh(learnable)
    assert learnable.has_knowledge_entry is True

    again = jobs.auto_learn_from_success_pattern()

    assert again == {"learned_count": 0, "questions_processed": 0}
    assert db_session.query(KnowledgeEntry).count() == 1


def test_auto_learn_skips_questions_already_covered(db_session, make_entry):
    make_entry("konto löschen")
    covered = _recurring(db_session, "wie kann ich mein konto löschen", ["a", "b", "c"])

    result = build_jobs(db_session).auto_learn_from_success_pattern()

    assert result == {"learned_count": 0, "questions_processed": 1}
    db_session.refresh(covered)
    assert covered.has_knowledge_entry is True
    assert db_session.query(KnowledgeEntry).count() == 1


def test_low_performing_entries_are_deactivated(db_session, make_entry):
    poor = make_entry("coins kaufen", success=2, failure=8)
    too_few_ratings = make_entry("ticket stornieren", success=1, failure=8)
    fine = make_entry("event erstellen", success=5, failure=5)
    jobs = build_jobs(db_session)

    result = jobs.deactivate_low_performing_knowledge()

    assert result == {"deactivated_count": 1, "entries_checked": 3}
    assert db_session.get(KnowledgeEntry, poor.id).is_active is False
    assert db_session.get(KnowledgeEntry, too_few_ratings.id).is_active is True
    assert db_session.get(KnowledgeEntry, fine.id).is_active is True
    event = db_session.query(AuditEvent).filter(AuditEvent.event_type == "knowledge_deactivated").one()
    assert event.knowledge_entry_id == poor.id

    assert jobs.deactivate_low_performing_knowledge() == {"deactivated_count": 0, "entries_checked": 2}


def test_learning_analytics_counts(db_session, make_entry):
    make_entry("coins kaufen")
    make_entry("event erstellen", source=KnowledgeSource.MANUAL)
    make_entry("alt", is_active=False)
    pipeline = FeedbackLearningPipeline(db_session, responder=FakeResponder())
    pipeline.learn_from_ticket("T-1", "Wo ist meine Rechnung?", "Profile > Invoices")
    rejected = pipeline.learn_from_ticket("T-2", "Wie storniere ich?", "My tickets > Cancel")
    pipeline.reject_entry(rejected.id, reviewer="admin-1")

    analytics = build_jobs(db_session).get_learning_analytics(days_back=30)

    assert analytics["knowledge_by_source"] == {"faq": 1, "manual": 1}
    assert analytics["queue_by_status"] == {"pending": 1, "rejected": 1}
    assert analytics["feedback_by_type"] == {}
    assert analytics["recurring_suggested"] == 0


def test_learning_job_runs_every_step(db_session):
    _recurring(db_session, "wie lösche ich mein konto", ["a", "b", "c"])

    result = build_jobs(db_session).run_learning_job()

    assert [s["step"] for s in result["steps"]] == [
        "auto_learn_from_success_pattern",
        "deactivate_low_performing_knowledge",
        "get_learning_analytics",
        "check_learning_queue",
    ]
    assert all(s["status"] == "success" for s in result["steps"])
    assert result["steps"][0]["learned_count"] == 1
    assert result["steps"][3]["pending_items"] == 0


def test_failing_step_does_not_stop_the_job(db_session, monkeypatch):
    jobs = build_jobs(db_session)

    def broken():
        raise RuntimeError("database went away")

    monkeypatch.setattr(jobs, "deactivate_low_performing_knowledge", broken)
    pipeline = jobs.pipeline
    pipeline.learn_from_ticket("T-1", "Wo ist meine Rechnung?", "Profile > Invoices")

    result = jobs.run_learning_job()

    statuses = {s["step"]: s["status"] for s in result["steps"]}
    assert statuses["deactivate_low_performing_knowledge"] == "error"
    assert statuses["check_learning_queue"] == "success"
    assert result["steps"][1]["error"] == "database went away"
    assert result["steps"][3]["pending_items"] == 1
    assert pipeline.list_queue(status=LearningQueueStatus.PENDING)[0].source_id == "T-1"


def test_auto_learn_refreshes_stale_priorities(db_session):
    recurring = _recurring(db_session, "wo finde ich rechnungen", ["only one"], priority=50)
    recurring.last_asked_at = datetime.utcnow() - timedelta(days=10)
    db_session.commit()

    build_jobs(db_session).auto_learn_from_success_pattern()

    db_session.refresh(recurring)
    assert recurring.learning_priority == 30


def _conversation(db_session, status, resolution=None, rating=None, messages=0, days_ago=0, ticket_ref=None):
    started_at = datetime.utcnow() - timedelta(days=days_ago)
    conversation = Conversation(
        user_id="user-1",
        status=status,
        resolution_type=resolution,
        escalated_ticket_ref=ticket_ref,
        message_count=messages,
        fallback_attempt_count=0,
        satisfaction_rating=rating,
        started_at=started_at,
        updated_at=started_at,
        ended_at=None if status == ConversationStatus.ACTIVE else started_at,
    )
    db_session.add(conversation)
    db_session.commit()
    return conversation


def test_chat_analytics_summarizes_recent_conversations(db_session):
    _conversation(db_session, ConversationStatus.RESOLVED, ResolutionType.AI_RESOLVED, rating=5, messages=4)
    _conversation(db_session, ConversationStatus.RESOLVED, ResolutionType.AI_RESOLVED, rating=4, messages=6)
    _conversation(db_session, ConversationStatus.ESCALATED, ResolutionType.ESCALATED, messages=8, ticket_ref="T-1")
    _conversation(db_session, ConversationStatus.ACTIVE, messages=2)
    _conversation(db_session, ConversationStatus.RESOLVED, ResolutionType.AI_RESOLVED, rating=1, messages=20, days_ago=9)

    analytics = build_jobs(db_session).get_chat_analytics(days_back=7)

    assert analytics["total_conversations"] == 4
    assert analytics["by_status"] == {"resolved": 2, "escalated": 1, "active": 1}
    assert analytics["by_resolution_type"] == {"ai_resolved": 2, "escalated": 1}
    assert analytics["resolved_conversations"] == 2
    assert analytics["escalated_conversations"] == 1
    assert analytics["success_rate"] == 50.0
    assert analytics["escalation_rate"] == 25.0
    assert analytics["avg_satisfaction"] == 4.5
    assert analytics["avg_messages_per_conversation"] == 5.0


def test_chat_analytics_without_conversations(db_session):
    analytics = build_jobs(db_session).get_chat_analytics()

    assert analytics["total_conversations"] == 0
    assert analytics["success_rate"] == 0.0
    assert analytics["avg_satisfaction"] is None
    assert analytics["avg_messages_per_conversation"] == 0.0


def test_unresolved_topics_use_first_user_question(db_session):
    older = _conversation(db_session, ConversationStatus.ESCALATED, ResolutionType.ESCALATED, days_ago=2, ticket_ref="T-1")
    db_session.add(ChatMessage.system(older, "Hello"))
    db_session.add(ChatMessage.user(older, "x" * 150))
    db_session.add(ChatMessage.user(older, "second question"))
    newer = _conversation(db_session, ConversationStatus.ESCALATED, ResolutionType.ESCALATED, ticket_ref="T-2")
    _conversation(db_session, ConversationStatus.RESOLVED, ResolutionType.AI_RESOLVED)
    db_session.commit()

    topics = build_jobs(db_session).get_top_unresolved_topics(limit=10)

    assert [t["conversation_id"] for t in topics] == [str(newer.id), str(older.id)]
    assert topics[0]["topic"] == "Unknown"
    assert topics[1]["topic"] == "x" * 100
    assert topics[1]["ticket_ref"] == "T-1"
    assert topics[1]["escalated_at"] == older.ended_at.isoformat()
