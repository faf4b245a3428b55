"""
Tests for the HTTP surface and its error mapping
"""
import uuid

import pytest
from fastapi.testclient import TestClient

from app.api.exception_handlers import get_status_for_exception
from app.core.database import get_db
from app.core.exceptions import ConversationConflictError
from app.main import app
from app.services import ai_client, ticket_client
from tests.conftest import FakeResponder, FakeTicketClient, generative_reply


@pytest.fixture
def client(db_session, monkeypatch):
    def override_get_db():
        yield db_session

    monkeypatch.setattr(ai_client, "_ai_client", FakeResponder([generative_reply("Generated answer")]))
    monkeypatch.setattr(ticket_client, "_ticket_client", FakeTicketClient())
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _start(client, user_id="user-1"):
    response = client.post("/v1/chat/conversations", json={"user_id": user_id})
    assert response.status_code == 200
    return response.json()["conversation"]["id"]


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_conversation_starts_with_greeting(client):
    response = client.post("/v1/chat/conversations", json={"user_id": "user-1"})

    body = response.json()
    assert body["conversation"]["status"] == "active"
    assert [m["sender"] for m in body["messages"]] == ["system"]


def test_send_message_returns_both_turns(client, make_entry):
    make_entry("coins kaufen", answer="Open the shop tab.", success=9, failure=1)
    conversation_id = _start(client)

    response = client.post(
        f"/v1/chat/conversations/{conversation_id}/messages", json={"message": "Ich kann keine Coins kaufen"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["user_message"]["text"] == "Ich kann keine Coins kaufen"
    assert body["ai_message"]["text"] == "Open the shop tab."
    assert body["ai_message"]["source"] == "knowledge_base"
    assert body["escalated"] is False


def test_empty_message_is_a_bad_request(client):
    conversation_id = _start(client)

    response = client.post(f"/v1/chat/conversations/{conversation_id}/messages", json={"message": "   "})

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidInputError"
    assert response.json()["retryable"] is False


def test_unknown_conversation_is_not_found(client):
    response = client.get(f"/v1/chat/conversations/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


def test_turn_on_resolved_conversation_conflicts(client):
    conversation_id = _start(client)
    client.post(f"/v1/chat/conversations/{conversation_id}/resolve")

    response = client.post(f"/v1/chat/conversations/{conversation_id}/messages", json={"message": "hello?"})

    assert response.status_code == 409


def test_escalation_returns_ticket_reference(client):
    conversation_id = _start(client)

    response = client.post(f"/v1/chat/conversations/{conversation_id}/escalate", json={})

    assert response.status_code == 200
    body = response.json()
    assert body["ticket_ref"] == "ticket-0001-abcdef"
    assert body["conversation"]["status"] == "escalated"


def test_failed_escalation_is_retryable(client, monkeypatch):
    monkeypatch.setattr(ticket_client, "_ticket_client", FakeTicketClient(fail=True))
    conversation_id = _start(client)

    response = client.post(f"/v1/chat/conversations/{conversation_id}/escalate", json={})

    assert response.status_code == 503
    assert response.json()["retryable"] is True
    conversation = client.get(f"/v1/chat/conversations/{conversation_id}").json()["conversation"]
    assert conversation["status"] == "active"


def test_invalid_rating_is_a_bad_request(client):
    conversation_id = _start(client)

    response = client.post(
        f"/v1/chat/conversations/{conversation_id}/rating", json={"rating": 9, "was_helpful": True}
    )

    assert response.status_code == 400


def test_manual_knowledge_is_matched(client):
    created = client.post("/v1/learning/knowledge", json={
        "question": "Wie ändere ich mein Passwort?",
        "answer": "Profile > Security > Change password.",
        "reviewer": "admin-1",
    })
    assert created.status_code == 200

    response = client.get("/v1/learning/knowledge/match", params={"q": "wie ändere ich mein passwort"})

    matches = response.json()["matches"]
    assert matches[0]["entry"]["id"] == created.json()["id"]
    assert matches[0]["score"] >= 1000


def test_learning_job_endpoint(client):
    response = client.post("/v1/learning/jobs/run")

    assert response.status_code == 200
    assert len(response.json()["steps"]) == 4


def test_concurrent_append_maps_to_retryable_conflict():
    error = ConversationConflictError("changed concurrently", conversation_id=uuid.uuid4())

    assert get_status_for_exception(error) == 409
    assert error.retryable is True


def test_punctuation_only_knowledge_is_a_bad_request(client):
    response = client.post("/v1/learning/knowledge", json={
        "question": "?!",
        "answer": "Anything",
        "reviewer": "admin-1",
    })

    assert response.status_code == 400


def test_chat_analytics_and_unresolved_topics(client):
    escalated_id = _start(client, "user-1")
    client.post(f"/v1/chat/conversations/{escalated_id}/messages", json={"message": "My payout never arrived"})
    client.post(f"/v1/chat/conversations/{escalated_id}/escalate", json={})
    _start(client, "user-2")

    analytics = client.get("/v1/learning/analytics/chat", params={"days_back": 7}).json()
    topics = client.get("/v1/learning/unresolved-topics", params={"limit": 5}).json()["topics"]

    assert analytics["total_conversations"] == 2
    assert analytics["escalated_conversations"] == 1
    assert analytics["escalation_rate"] == 50.0
    assert [t["conversation_id"] for t in topics] == [escalated_id]
    assert topics[0]["topic"] == "My payout never arrived"
    assert topics[0]["ticket_ref"] == "ticket-0001-abcdef"
