"""
Exceptions raised by the support chat services
"""


class SupportChatError(Exception):
    """Base exception for support chat errors."""
    def __init__(self, message, retryable=False):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class InvalidInputError(SupportChatError):
    """Raised when a request is rejected before any state is touched (empty or oversized text, bad feedback)."""
    pass


class NotFoundError(SupportChatError):
    """Raised when a conversation, message, feedback or queue entry does not exist."""
    pass


class InvalidStateError(SupportChatError):
    """Raised for transitions the state machines do not allow (e.g. a turn on a closed conversation)."""
    pass


class TicketCreationError(SupportChatError):
    """Raised by the ticket client when the ticketing system did not create a ticket."""
    def __init__(self, message, status_code=None):
        super().__init__(message, retryable=True)
        self.status_code = status_code


class EscalationError(SupportChatError):
    """Raised when a conversation could not be escalated. The conversation is left unchanged."""
    def __init__(self, message, conversation_id=None):
        super().__init__(message, retryable=True)
        self.conversation_id = conversation_id


class ConversationConflictError(SupportChatError):
    """Raised when another writer appended to the conversation first. The conflicting append is rolled back."""
    def __init__(self, message, conversation_id=None):
        super().__init__(message, retryable=True)
        self.conversation_id = conversation_id
