"""
Tests for the AI gateway and ticketing clients, and log redaction
"""
import json
import logging

import httpx
import pytest

from app.core.exceptions import TicketCreationError
from app.core.logging_config import RedactionFilter
from app.services.ai_client import AIClient
from app.services.ticket_client import TicketClient


def _with_transport(client, handler):
    client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


@pytest.mark.asyncio
async def test_ai_client_returns_answer_and_clamps_confidence():
    seen = {}

    def handler(request):
        seen["payload"] = json.loads(request.content)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"response": " Use the shop. ", "confidence": 1.4, "model": "gpt"})

    client = _with_transport(AIClient(base_url="http://gateway", api_key="secret"), handler)

    reply = await client.generate_chat_response("conv-1", "How?", [{"role": "user", "content": "Hi"}])

    assert reply == {"response": "Use the shop.", "confidence": 1.0, "fallback": False, "model_used": "gpt"}
    assert seen["payload"]["history"] == [{"role": "user", "content": "Hi"}]
    assert seen["auth"] == "Bearer secret"


@pytest.mark.asyncio
async def test_ai_client_gateway_error_is_fallback():
    client = _with_transport(AIClient(base_url="http://gateway"), lambda request: httpx.Response(502))

    reply = await client.generate_chat_response("conv-1", "How?", [])

    assert reply["fallback"] is True
    assert reply["response"] == ""


@pytest.mark.asyncio
async def test_ai_client_empty_answer_is_fallback():
    client = _with_transport(
        AIClient(base_url="http://gateway"),
        lambda request: httpx.Response(200, json={"response": "   ", "confidence": 0.9})
    )

    assert (await client.generate_chat_response("conv-1", "How?", []))["fallback"] is True


@pytest.mark.asyncio
async def test_ticket_client_returns_ticket_id():
    def handler(request):
        assert request.url.path == "/tickets"
        assert json.loads(request.content)["source"] == "chat_escalation"
        return httpx.Response(201, json={"ticket": {"id": 4711}})

    client = _with_transport(TicketClient(base_url="http://tickets"), handler)

    assert await client.create_ticket("subject", "description", user_id="user-1") == {"id": "4711"}


@pytest.mark.asyncio
async def test_ticket_client_error_status_raises():
    client = _with_transport(TicketClient(base_url="http://tickets"), lambda request: httpx.Response(503))

    with pytest.raises(TicketCreationError) as exc_info:
        await client.create_ticket("subject", "description")

    assert exc_info.value.status_code == 503
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_ticket_client_missing_id_raises():
    client = _with_transport(TicketClient(base_url="http://tickets"), lambda request: httpx.Response(200, json={}))

    with pytest.raises(TicketCreationError):
        await client.create_ticket("subject", "description")


def test_redaction_filter_masks_contact_data():
    record = logging.LogRecord(
        "app", logging.INFO, __file__, 1,
        "User %s called from %s about %s", ("jane.doe@example.com", "+49 170 1234567", "a1b2c3d4-1234-5678-9abc-def012345678"),
        None
    )

    RedactionFilter().filter(record)

    assert record.getMessage() == (
        "User [EMAIL_REDACTED] called from [PHONE_REDACTED] about a1b2c3d4-1234-5678-9abc-def012345678"
    )
