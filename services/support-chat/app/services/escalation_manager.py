"""
Escalation Manager
Hands a conversation over to a human-handled ticket
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import (
    ConversationConflictError, EscalationError, InvalidStateError, NotFoundError, TicketCreationError,
)
from app.models.conversation import (
    ChatMessage, Conversation, ConversationStatus, ResolutionType, SenderType
)
from app.services.audit_service import log_audit_event
from app.services.ticket_client import get_ticket_client

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "Chat escalation: "
SUBJECT_LENGTH = 50
DEFAULT_SUBJECT_TEXT = "Support needed"


def build_transcript(messages: List[ChatMessage]) -> str:
    return "\n\n".join(
        f"[{m.sender_type.value.upper()}]: {m.text}" for m in messages
    )


def build_subject(messages: List[ChatMessage]) -> str:
    first_user_message = next(
        (m.text for m in messages if m.sender_type == SenderType.USER),
        DEFAULT_SUBJECT_TEXT
    )
    return f"{SUBJECT_PREFIX}{first_user_message[:SUBJECT_LENGTH]}..."


def build_description(
    conversation: Conversation,
    messages: List[ChatMessage],
    additional_context: Optional[str] = None
) -> str:
    prefix = f"{additional_context.strip()}\n\n" if additional_context and additional_context.strip() else ""
    return (
        f"{prefix}Chat transcript:\n\n"
        f"{build_transcript(messages)}\n\n"
        f"---\n"
        f"Escalated from chat conversation: {conversation.id}\n"
        f"AI attempts: {conversation.fallback_attempt_count or 0}"
    )


class EscalationManager:
    """Creates the ticket first, then moves the conversation to escalated"""

    def __init__(self, db: Session, ticket_client=None):
        self.db = db
        self.ticket_client = ticket_client or get_ticket_client()

    async def escalate(self, conversation_id: uuid.UUID, additional_context: Optional[str] = None) -> str:
        """
        Escalate a conversation to a ticket

        Returns the ticket reference. Escalating an already escalated
        conversation returns its stored reference.

        Raises:
            NotFoundError: unknown conversation
            InvalidStateError: conversation resolved or abandoned
            EscalationError: ticket creation failed; nothing was changed
        """
        conversation = self.db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if not conversation:
            raise NotFoundError(f"Conversation {conversation_id} not found")

        if conversation.status == ConversationStatus.ESCALATED and conversation.escalated_ticket_ref:
            return conversation.escalated_ticket_ref
        if conversation.is_terminal:
            raise InvalidStateError(
                f"Conversation {conversation_id} is {conversation.status.value} and cannot be escalated"
            )

        messages = self.db.query(ChatMessage).filter(
            ChatMessage.conversation_id == conversation.id
        ).order_by(ChatMessage.sequence).all()

        try:
            ticket = await self.ticket_client.create_ticket(
                subject=build_subject(messages),
                description=build_description(conversation, messages, additional_context),
                user_id=conversation.user_id
            )
        except TicketCreationError as e:
            logger.error("Escalation of conversation %s failed: %s", conversation_id, e.message)
            raise EscalationError(
                f"Could not create a ticket for conversation {conversation_id}: {e.message}",
                conversation_id=conversation_id
            ) from e

        ticket_ref = ticket["id"]
        now = datetime.utcnow()
        conversation.status = ConversationStatus.ESCALATED
        conversation.resolution_type = ResolutionType.ESCALATED
        conversation.escalated_ticket_ref = ticket_ref
        conversation.ended_at = now
        self.db.add(ChatMessage.system(
            conversation,
            f"Your conversation has been forwarded to our support team. Ticket number: #{ticket_ref[:8]}"
        ))
        log_audit_event(
            self.db,
            event_type="conversation_escalated",
            conversation_id=conversation.id,
            payload={
                "ticket_ref": ticket_ref,
                "fallback_attempt_count": conversation.fallback_attempt_count,
                "message_count": conversation.message_count
            },
            commit=False
        )
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.error(
                "Ticket %s created but conversation %s changed concurrently: %s", ticket_ref, conversation_id, e.orig
            )
            raise ConversationConflictError(
                f"Conversation {conversation_id} was changed concurrently, retry the request",
                conversation_id=conversation_id
            )

        logger.info("Conversation %s escalated to ticket %s", conversation.id, ticket_ref)
        return ticket_ref
