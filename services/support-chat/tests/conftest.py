"""
Shared fixtures: in-memory database, knowledge entries and fake collaborators
"""
import uuid
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.core.exceptions import TicketCreationError
from app.models.knowledge import KnowledgeEntry, KnowledgeSource
from app.services.text_normalizer import unique_keywords


class FakeResponder:
    """Generative responder returning queued replies, fallback once they run out"""

    def __init__(self, replies=None, error=None):
        self.replies = list(replies or [])
        self.error = error
        self.calls = []

    async def generate_chat_response(self, conversation_id, user_message, history):
        self.calls.append({
            "conversation_id": conversation_id,
            "user_message": user_message,
            "history": history,
        })
        if self.error:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return {"response": "", "confidence": 0.0, "fallback": True, "model_used": "fallback"}


def generative_reply(text, confidence=0.9):
    return {"response": text, "confidence": confidence, "fallback": False, "model_used": "test-model"}


class FakeTicketClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def create_ticket(self, subject, description, user_id=None):
        self.calls.append({"subject": subject, "description": description, "user_id": user_id})
        if self.fail:
            raise TicketCreationError("Ticketing API returned 502", status_code=502)
        return {"id": f"ticket-{len(self.calls):04d}-abcdef"}


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Create test database session"""
    Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def responder():
    return FakeResponder()


@pytest.fixture
def ticket_client():
    return FakeTicketClient()


@pytest.fixture
def make_entry(db_session):
    """Factory for knowledge entries with a given success/failure history"""
    def _make(
        pattern,
        answer="Standard answer",
        keywords=None,
        success=0,
        failure=0,
        priority=0,
        confidence_threshold=0.8,
        category="general",
        is_active=True,
        last_used_at=None,
        source=KnowledgeSource.FAQ,
    ):
        entry = KnowledgeEntry(
            id=uuid.uuid4(),
            pattern=pattern,
            answer=answer,
            category=category,
            keywords=keywords if keywords is not None else unique_keywords(pattern),
            source=source,
            usage_count=success + failure,
            success_count=success,
            failure_count=failure,
            confidence_threshold=confidence_threshold,
            priority=priority,
            is_active=is_active,
            version=1,
            created_at=datetime.utcnow(),
            last_updated=datetime.utcnow(),
            last_used_at=last_used_at,
        )
        db_session.add(entry)
        db_session.commit()
        return entry
    return _make
