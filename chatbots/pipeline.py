import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from django.db import DatabaseError

from .exceptions import GENERIC_PROVIDER_ERROR, ChatbotInactive, InvalidChatRequest
from .llm_providers import LLMProviderError, ProviderRegistry, ProviderSelection, get_provider_registry
from .models import Chatbot, WidgetConversation, WidgetMessage
from .storage import (
    append_message,
    find_or_create_conversation,
    get_chatbot,
    list_knowledge_items,
    list_messages,
)
from .streaming import encode_frame
from .trace import trace_span
from .utils import build_chat_messages, build_system_prompt

logger = logging.getLogger(__name__)


@dataclass
class PreparedChat:
    chatbot: Chatbot
    conversation: WidgetConversation
    messages: List[Dict[str, Any]]
    selection: ProviderSelection


@dataclass
class ChatTurn:
    prepared: PreparedChat
    fragments: Iterator[str]
    first_fragment: Optional[str]
    started_at: float

    def elapsed_ms(self) -> int:
        return max(1, round((time.monotonic() - self.started_at) * 1000))


class WidgetChatPipeline:
    """
    One visitor message through validation, persistence, context assembly,
    provider dispatch and streamed relay.

    The work is split in three steps so the view can answer with a plain JSON
    error for anything that fails before the first fragment:

      prepare() validates, persists the visitor message and builds the prompt.
      start()   opens the provider stream and pulls the first fragment.
      relay()   yields transport frames and persists the assistant reply.
    """

    def __init__(self, registry: Optional[ProviderRegistry] = None):
        self.registry = registry or get_provider_registry()

    def prepare(self, chatbot_id, message: str, session_id: str) -> PreparedChat:
        # Whitespace only counts as blank; accepted values are stored exactly as sent.
        if not isinstance(message, str) or not message.strip():
            raise InvalidChatRequest()
        if not isinstance(session_id, str) or not session_id.strip():
            raise InvalidChatRequest()

        chatbot = get_chatbot(chatbot_id)
        if not chatbot.is_active:
            raise ChatbotInactive()

        conversation = find_or_create_conversation(chatbot, session_id)
        append_message(conversation, WidgetMessage.ROLE_USER, message)

        history = list_messages(conversation)
        knowledge_items = list_knowledge_items(chatbot)
        system_prompt = build_system_prompt(chatbot, knowledge_items)
        messages = build_chat_messages(system_prompt, history)

        selection = self.registry.for_chatbot(chatbot)
        logger.info(
            "Prepared widget chat for chatbot %s conversation %s: %s history messages, %s knowledge items, provider=%s model=%s.",
            chatbot.id,
            conversation.id,
            len(history),
            len(knowledge_items),
            selection.provider_key,
            selection.model,
        )
        return PreparedChat(chatbot=chatbot, conversation=conversation, messages=messages, selection=selection)

    def start(self, prepared: PreparedChat) -> ChatTurn:
        """Open the provider stream. Provider failures here propagate as LLMProviderError."""
        chatbot = prepared.chatbot
        selection = prepared.selection
        started_at = time.monotonic()
        try:
            with trace_span(
                "widget_chat.provider_open",
                chatbot_id=chatbot.id,
                provider=selection.provider_key,
                model=selection.model,
            ):
                fragments = selection.provider.stream_chat(
                    prepared.messages,
                    model=selection.model,
                    max_tokens=chatbot.max_tokens,
                    temperature=chatbot.temperature,
                )
                first_fragment = next(fragments, None)
        except LLMProviderError as exc:
            logger.error(
                "Provider %s failed before streaming for chatbot %s (%s): %s",
                selection.provider_key,
                chatbot.id,
                exc.kind,
                exc.backend_message,
            )
            raise
        return ChatTurn(prepared=prepared, fragments=fragments, first_fragment=first_fragment, started_at=started_at)

    def relay(self, turn: ChatTurn) -> Iterator[str]:
        """
        Yield event-stream frames for one assistant turn.

        Each fragment is accumulated before its frame is yielded, so whatever has
        reached the visitor is always a prefix of what gets persisted.
        """
        conversation = turn.prepared.conversation
        accumulated: List[str] = []
        persisted = False

        def persist() -> int:
            nonlocal persisted
            persisted = True
            response_time_ms = turn.elapsed_ms()
            append_message(conversation, WidgetMessage.ROLE_ASSISTANT, "".join(accumulated), response_time_ms)
            return response_time_ms

        def persist_partial() -> None:
            if not accumulated or persisted:
                return
            try:
                persist()
            except DatabaseError:
                logger.exception("Could not persist partial reply for conversation %s.", conversation.id)

        try:
            try:
                if turn.first_fragment is not None:
                    accumulated.append(turn.first_fragment)
                    yield encode_frame({"content": turn.first_fragment})
                for fragment in turn.fragments:
                    accumulated.append(fragment)
                    yield encode_frame({"content": fragment})
                response_time_ms = persist()
            except LLMProviderError as exc:
                logger.error(
                    "Provider %s failed mid-stream for conversation %s after %s fragments (%s): %s",
                    turn.prepared.selection.provider_key,
                    conversation.id,
                    len(accumulated),
                    exc.kind,
                    exc.backend_message,
                )
                persist_partial()
                yield encode_frame({"error": GENERIC_PROVIDER_ERROR})
                return
            except Exception:
                # The visitor still gets a terminal frame, whatever broke.
                logger.exception(
                    "Widget reply for conversation %s failed after %s fragments.", conversation.id, len(accumulated)
                )
                persist_partial()
                yield encode_frame({"error": GENERIC_PROVIDER_ERROR})
                return

            logger.info(
                "Widget reply for conversation %s completed in %sms (%s chars).",
                conversation.id,
                response_time_ms,
                sum(len(part) for part in accumulated),
            )
            yield encode_frame({"done": True, "responseTimeMs": response_time_ms})
        except GeneratorExit:
            logger.info("Visitor disconnected from conversation %s mid-stream.", conversation.id)
            persist_partial()
            raise
        finally:
            close = getattr(turn.fragments, "close", None)
            if close is not None:
                close()
