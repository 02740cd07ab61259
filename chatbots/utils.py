import logging
from typing import Any, Dict, Iterable, List

from django.conf import settings
from django.core.exceptions import ValidationError
from django.shortcuts import get_object_or_404
from django.utils import timezone
from knox.models import AuthToken

from .models import Chatbot, KnowledgeBaseItem, WidgetMessage

logger = logging.getLogger(__name__)

KNOWLEDGE_BASE_HEADER = "\n\nKnowledge Base Context:\n"


def build_knowledge_context(items: Iterable[KnowledgeBaseItem]) -> str:
    """
    Render knowledge items as the block appended to a chatbot's system prompt.

    Returns an empty string when there are no items so the prompt is left untouched.
    """
    entries = [f"{item.title}: {item.content}" for item in items]
    if not entries:
        return ""
    return KNOWLEDGE_BASE_HEADER + "\n\n".join(entries)


def build_system_prompt(chatbot: Chatbot, items: Iterable[KnowledgeBaseItem]) -> str:
    return chatbot.effective_system_prompt + build_knowledge_context(items)


def build_chat_messages(system_prompt: str, history: Iterable[WidgetMessage]) -> List[Dict[str, Any]]:
    """System instruction followed by the conversation history, oldest first."""
    messages = [{"role": "system", "content": system_prompt}]
    for msg in history:
        messages.append({"role": msg.role, "content": msg.content})
    return messages


def build_embed_code(chatbot: Chatbot) -> str:
    """The <script> tag a tenant pastes into their site to load the widget."""
    base_url = getattr(settings, "WIDGET_BASE_URL", "").rstrip("/")
    return f'<script src="{base_url}/widget.js" data-chatbot-id="{chatbot.id}"></script>'


def get_authenticated_user(token: str) -> Any:
    auth_token = get_object_or_404(AuthToken.objects.select_related("user"), token_key=token)
    if auth_token.expiry is not None and auth_token.expiry < timezone.now():
        auth_token.delete()
        raise ValidationError("Authentication failed: Token has expired.")
    user = auth_token.user
    if not user.is_active:
        raise ValidationError("Authentication failed: User account is disabled.")
    return user
