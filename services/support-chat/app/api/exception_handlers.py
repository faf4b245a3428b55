"""
Maps service exceptions to JSON error responses
"""
import logging
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.exceptions import (
    ConversationConflictError, EscalationError, InvalidInputError, InvalidStateError, NotFoundError, SupportChatError,
)

logger = logging.getLogger(__name__)

STATUS_FOR_EXCEPTION: Dict[type, int] = {
    InvalidInputError: 400,
    NotFoundError: 404,
    InvalidStateError: 409,
    ConversationConflictError: 409,
    EscalationError: 503,
}


def get_status_for_exception(exc: SupportChatError) -> int:
    for exc_type, status_code in STATUS_FOR_EXCEPTION.items():
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def support_chat_exception_handler(request: Request, exc: SupportChatError) -> JSONResponse:
    status_code = get_status_for_exception(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%d): %s", request.method, request.url.path, status_code, exc.message)

    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "detail": exc.message,
            "retryable": exc.retryable,
        },
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(SupportChatError, support_chat_exception_handler)
