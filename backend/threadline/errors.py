"""
Error taxonomy for the chat engine.

Every failure that can reach a user resolves to one of these. Each carries a
user-facing message, whether retrying can help, and the action the client
should offer.
"""

import asyncio
from typing import Optional

import openai


class ChatError(Exception):
    """Base class for user-facing chat failures."""

    code = "chat_error"
    status_code = 500
    retryable = False
    action: Optional[str] = None
    default_message = "Something went wrong. Please try again."

    def __init__(self, user_message: Optional[str] = None, *, detail: Optional[str] = None):
        self.user_message = user_message or self.default_message
        self.detail = detail
        super().__init__(detail or self.user_message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.user_message,
            "retryable": self.retryable,
            "action": self.action,
        }


class QuotaExceeded(ChatError):
    code = "quota_exceeded"
    status_code = 429
    action = "upgrade"
    default_message = "Message limit reached. It resets when your usage window rolls over."


class ContentTooLarge(ChatError):
    code = "content_too_large"
    status_code = 413
    retryable = True
    action = "reduce_message"
    default_message = (
        "Your message is too long for the selected model. Try a shorter message "
        "or a model with a larger context window."
    )


class NetworkInterrupted(ChatError):
    code = "network_interrupted"
    status_code = 503
    retryable = True
    action = "retry"
    default_message = "The connection was interrupted. Your partial answer was kept; you can retry."


class ProviderError(ChatError):
    code = "provider_error"
    status_code = 502
    retryable = True
    action = "retry"
    default_message = "The model provider returned an error. Please try again."


class PersistenceWriteFailed(ChatError):
    code = "persistence_write_failed"
    status_code = 500
    retryable = True
    action = "retry"
    default_message = "The response could not be saved. You can copy it below."


class ThreadNotFound(ChatError):
    code = "thread_not_found"
    status_code = 404
    default_message = "Conversation not found."


class MessageNotFound(ChatError):
    code = "message_not_found"
    status_code = 404
    default_message = "Message not found."


class SessionNotFound(ChatError):
    code = "session_not_found"
    status_code = 404
    default_message = "No generation to resume for this conversation."


def classify_exception(exc: BaseException) -> ChatError:
    """Map an arbitrary exception onto the taxonomy."""
    if isinstance(exc, ChatError):
        return exc

    detail = str(exc) or exc.__class__.__name__
    message = detail.lower()

    if isinstance(exc, (openai.APIConnectionError, asyncio.TimeoutError, ConnectionError)):
        return NetworkInterrupted(detail=detail)

    if isinstance(exc, openai.RateLimitError):
        return ProviderError("The model provider is rate limiting requests. Please wait a moment.", detail=detail)

    if "context length" in message or "context_length" in message or "request too large" in message or (
        "token" in message and ("limit" in message or "exceeded" in message)
    ):
        return ContentTooLarge(detail=detail)

    if isinstance(exc, openai.APIStatusError) and exc.status_code == 413:
        return ContentTooLarge(detail=detail)

    if isinstance(exc, openai.APIError):
        return ProviderError(detail=detail)

    if "network" in message or "connection" in message or "timeout" in message:
        return NetworkInterrupted(detail=detail)

    return ProviderError(detail=detail)
