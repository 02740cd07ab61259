"""
Persistence helpers for the widget chat pipeline.

Conversations are immutable once created, messages are append-only and a
conversation holds at most one rating. Transcript order is insertion order,
which is the auto-increment id order.
"""
import logging
from typing import List, Optional

from django.db import IntegrityError, transaction

from .exceptions import AlreadyRated, ChatbotNotFound, ConversationNotFound
from .models import Chatbot, ConversationRating, KnowledgeBaseItem, WidgetConversation, WidgetMessage

logger = logging.getLogger(__name__)


def get_chatbot(chatbot_id) -> Chatbot:
    try:
        return Chatbot.objects.get(id=chatbot_id)
    except (Chatbot.DoesNotExist, ValueError, TypeError):
        raise ChatbotNotFound()


def find_conversation(chatbot_id, session_id: str) -> Optional[WidgetConversation]:
    return WidgetConversation.objects.filter(chatbot_id=chatbot_id, session_id=session_id).first()


def find_or_create_conversation(chatbot: Chatbot, session_id: str) -> WidgetConversation:
    """
    Return the conversation bound to (chatbot, session_id), creating it on first use.

    Two concurrent first messages for one session race on the unique constraint;
    get_or_create re-fetches the winner's row when its own insert loses.
    """
    conversation, created = WidgetConversation.objects.get_or_create(chatbot=chatbot, session_id=session_id)
    if created:
        logger.info("Created widget conversation %s for chatbot %s.", conversation.id, chatbot.id)
    return conversation


def append_message(
    conversation: WidgetConversation,
    role: str,
    content: str,
    response_time_ms: Optional[int] = None,
) -> WidgetMessage:
    return WidgetMessage.objects.create(
        conversation=conversation,
        role=role,
        content=content,
        response_time_ms=response_time_ms if role == WidgetMessage.ROLE_ASSISTANT else None,
    )


def list_messages(conversation: WidgetConversation) -> List[WidgetMessage]:
    return list(WidgetMessage.objects.filter(conversation=conversation).order_by("id"))


def list_knowledge_items(chatbot: Chatbot) -> List[KnowledgeBaseItem]:
    """Knowledge items of a chatbot, newest first."""
    return list(KnowledgeBaseItem.objects.filter(chatbot=chatbot).order_by("-created_at", "-id"))


def submit_rating(chatbot: Chatbot, session_id: str, rating: int, feedback: Optional[str] = None) -> ConversationRating:
    conversation = find_conversation(chatbot.id, session_id)
    if conversation is None:
        raise ConversationNotFound()

    try:
        with transaction.atomic():
            return ConversationRating.objects.create(
                conversation=conversation,
                rating=rating,
                feedback=feedback or None,
            )
    except IntegrityError:
        logger.info("Rejected second rating for conversation %s.", conversation.id)
        raise AlreadyRated()
