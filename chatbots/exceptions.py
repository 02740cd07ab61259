import logging

from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.views import exception_handler

from .llm_providers import LLMProviderError, LLMTimeoutError

logger = logging.getLogger(__name__)

# Text shown to visitors when a provider fails; backend detail only goes to the log.
GENERIC_PROVIDER_ERROR = "Failed to get AI response"


class InvalidChatRequest(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Message and session ID are required"
    default_code = "invalid_request"


class ChatbotNotFound(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Chatbot not found"
    default_code = "chatbot_not_found"


class ConversationNotFound(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Conversation not found"
    default_code = "conversation_not_found"


class ChatbotInactive(APIException):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Chatbot is not active"
    default_code = "chatbot_inactive"


class AlreadyRated(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conversation already rated"
    default_code = "already_rated"


def provider_error_status(exc: LLMProviderError) -> int:
    """HTTP status a visitor sees for a provider failure: 504 for timeouts, 502 otherwise."""
    if isinstance(exc, LLMTimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_502_BAD_GATEWAY


def widget_exception_handler(exc, context):
    """
    DRF exception handler rendering every API error as `{"error": ...}`.

    Field validation errors keep their per-field detail under `details`.
    """
    response = exception_handler(exc, context)
    if response is None:
        return None

    detail = response.data
    if isinstance(detail, dict) and set(detail.keys()) == {"detail"}:
        response.data = {"error": detail["detail"]}
    elif isinstance(detail, (dict, list)):
        response.data = {"error": "Invalid request", "details": detail}
    else:
        response.data = {"error": detail}

    view = context.get("view")
    logger.info(
        "API error in %s: %s (%s)",
        view.__class__.__name__ if view is not None else "unknown view",
        response.data["error"],
        response.status_code,
    )
    return response
