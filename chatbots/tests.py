import threading

from django.db import DatabaseError, IntegrityError, connection, transaction
from django.db.models.query import QuerySet
from django.test import TestCase, TransactionTestCase, skipUnlessDBFeature
from django.urls import reverse
from rest_framework.test import APIClient
from unittest.mock import patch
from knox.models import AuthToken

from .exceptions import GENERIC_PROVIDER_ERROR, ChatbotInactive, InvalidChatRequest
from .llm_providers import (
    LLMAuthenticationError,
    LLMServiceUnavailableError,
    LLMTimeoutError,
    ProviderRegistry,
)
from .models import (
    Chatbot,
    ConversationRating,
    KnowledgeBaseItem,
    User,
    WidgetConversation,
    WidgetMessage,
)
from .pipeline import WidgetChatPipeline
from .resilience import reset_circuit_breakers
from .storage import find_or_create_conversation
from .streaming import SSEFrameDecoder


class FakeProvider:
    """Stands in for a provider adapter: records calls and replays scripted fragments."""

    def __init__(self, fragments=(), fail_before=None, fail_at=None, fail_with=None):
        self.fragments = list(fragments)
        self.fail_before = fail_before
        self.fail_at = fail_at
        self.fail_with = fail_with
        self.calls = []
        self.closed = False

    def stream_chat(self, messages, model, max_tokens, temperature=None):
        self.calls.append({
            'messages': [dict(m) for m in messages],
            'model': model,
            'max_tokens': max_tokens,
            'temperature': temperature,
        })
        if self.fail_before is not None:
            raise self.fail_before
        return self._fragments()

    def _fragments(self):
        try:
            for index, fragment in enumerate(self.fragments):
                if self.fail_at == index:
                    raise self.fail_with or LLMServiceUnavailableError(
                        "Service unavailable", backend_message="connection reset by peer"
                    )
                yield fragment
        finally:
            self.closed = True


def registry_for(provider):
    return ProviderRegistry(openai_provider=provider, gemini_provider=provider, custom_factory=lambda chatbot: provider)


def read_events(response):
    decoder = SSEFrameDecoder()
    body = b"".join(response.streaming_content)
    return decoder.feed(body) + decoder.flush()


class WidgetTestMixin:
    def setUp(self):
        reset_circuit_breakers()
        self.user = User.objects.create_user(username="owner@example.com", email="owner@example.com", password="password")
        self.chatbot = Chatbot.objects.create(
            user=self.user,
            name="Support Bot",
            system_prompt="You are a support agent.",
            ai_model="gpt-4o-mini",
            temperature=0.3,
            max_tokens=256,
        )
        self.client = APIClient()

    def _chat_url(self, chatbot_id=None):
        return reverse('widget-chat', kwargs={'chatbot_id': chatbot_id or self.chatbot.id})

    def _config_url(self, chatbot_id=None):
        return reverse('widget-config', kwargs={'chatbot_id': chatbot_id or self.chatbot.id})

    def _rate_url(self, chatbot_id=None):
        return reverse('widget-rate', kwargs={'chatbot_id': chatbot_id or self.chatbot.id})

    def _chat(self, provider, message="Hello", session_id="session_1", chatbot_id=None):
        with patch('chatbots.pipeline.get_provider_registry', return_value=registry_for(provider)):
            response = self.client.post(
                self._chat_url(chatbot_id), {'message': message, 'sessionId': session_id}, format='json'
            )
            events = read_events(response) if response.streaming else None
        return response, events


class WidgetChatFlowTests(WidgetTestMixin, TestCase):
    def test_chat_streams_fragments_and_persists_reply(self):
        provider = FakeProvider(["Hel", "lo", " there"])

        response, events = self._chat(provider, message="Hi")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Content-Type'], 'text/event-stream')
        self.assertEqual(response['Cache-Control'], 'no-cache')
        self.assertEqual(response['Access-Control-Allow-Origin'], '*')
        self.assertEqual(events[:3], [{'content': 'Hel'}, {'content': 'lo'}, {'content': ' there'}])
        self.assertTrue(events[3]['done'])
        self.assertGreaterEqual(events[3]['responseTimeMs'], 1)
        self.assertEqual(len(events), 4)

        messages = list(WidgetMessage.objects.order_by('id'))
        self.assertEqual([(m.role, m.content) for m in messages], [('user', 'Hi'), ('assistant', 'Hello there')])
        self.assertIsNone(messages[0].response_time_ms)
        self.assertEqual(messages[1].response_time_ms, events[3]['responseTimeMs'])
        self.assertTrue(provider.closed)

    def test_provider_receives_chatbot_settings(self):
        provider = FakeProvider(["ok"])

        self._chat(provider)

        call = provider.calls[0]
        self.assertEqual(call['model'], 'gpt-4o-mini')
        self.assertEqual(call['max_tokens'], 256)
        self.assertEqual(call['temperature'], 0.3)
        self.assertEqual(call['messages'], [
            {'role': 'system', 'content': 'You are a support agent.'},
            {'role': 'user', 'content': 'Hello'},
        ])

    def test_repeated_messages_build_alternating_transcript(self):
        provider = FakeProvider(["answer"])
        for text in ("one", "two", "three"):
            self._chat(provider, message=text)

        self.assertEqual(WidgetConversation.objects.filter(chatbot=self.chatbot).count(), 1)
        messages = list(WidgetMessage.objects.order_by('id'))
        self.assertEqual(len(messages), 6)
        self.assertEqual([m.role for m in messages], ['user', 'assistant'] * 3)
        self.assertEqual([m.content for m in messages[::2]], ["one", "two", "three"])

        # Third call sees the whole history of this session, oldest first.
        self.assertEqual(
            [(m['role'], m['content']) for m in provider.calls[2]['messages'][1:]],
            [('user', 'one'), ('assistant', 'answer'), ('user', 'two'), ('assistant', 'answer'), ('user', 'three')],
        )

    def test_spanish_session_resolves_to_same_conversation(self):
        self.chatbot.system_prompt = "Eres un asistente útil."
        self.chatbot.save()
        provider = FakeProvider(["¡Hola! ", "¿En qué puedo ayudarte?"])

        _, events = self._chat(provider, message="Hola", session_id="S1")
        reply = "".join(e['content'] for e in events if 'content' in e)
        conversation = WidgetConversation.objects.get(chatbot=self.chatbot, session_id="S1")
        first = list(conversation.messages.order_by('id'))
        self.assertEqual([(m.role, m.content) for m in first], [('user', 'Hola'), ('assistant', reply)])
        self.assertGreater(first[1].response_time_ms, 0)
        self.assertEqual(provider.calls[0]['messages'][0]['content'], "Eres un asistente útil.")

        self._chat(provider, message="Gracias", session_id="S1")
        self.assertEqual(WidgetConversation.objects.get(chatbot=self.chatbot, session_id="S1").id, conversation.id)
        self.assertEqual(
            [m.role for m in conversation.messages.order_by('id')],
            ['user', 'assistant', 'user', 'assistant'],
        )

    def test_sessions_are_isolated(self):
        other_bot = Chatbot.objects.create(user=self.user, name="Other Bot")
        provider = FakeProvider(["hi"])

        self._chat(provider, message="first", session_id="a")
        self._chat(provider, message="second", session_id="b")
        self._chat(provider, message="third", session_id="a", chatbot_id=other_bot.id)

        self.assertEqual(WidgetConversation.objects.count(), 3)
        self.assertEqual(provider.calls[1]['messages'][1:], [{'role': 'user', 'content': 'second'}])
        self.assertEqual(provider.calls[2]['messages'][1:], [{'role': 'user', 'content': 'third'}])

    def test_knowledge_items_are_appended_to_system_prompt(self):
        KnowledgeBaseItem.objects.create(chatbot=self.chatbot, title="Hours", content="9-5 weekdays")
        KnowledgeBaseItem.objects.create(chatbot=self.chatbot, title="Returns", content="30 days")
        KnowledgeBaseItem.objects.create(chatbot=None, title="Orphan", content="never used")
        provider = FakeProvider(["ok"])

        self._chat(provider)

        system = provider.calls[0]['messages'][0]
        self.assertEqual(system['role'], 'system')
        self.assertEqual(
            system['content'],
            "You are a support agent.\n\nKnowledge Base Context:\nReturns: 30 days\n\nHours: 9-5 weekdays",
        )

    def test_empty_system_prompt_falls_back_to_default(self):
        self.chatbot.system_prompt = ""
        self.chatbot.save()
        provider = FakeProvider(["ok"])

        self._chat(provider)

        self.assertEqual(provider.calls[0]['messages'][0]['content'], "You are a helpful assistant.")

    def test_inactive_chatbot_is_rejected_without_side_effects(self):
        self.chatbot.is_active = False
        self.chatbot.save()
        provider = FakeProvider(["never"])

        response, _ = self._chat(provider)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {'error': 'Chatbot is not active'})
        self.assertFalse(WidgetConversation.objects.exists())
        self.assertFalse(WidgetMessage.objects.exists())
        self.assertEqual(provider.calls, [])

    def test_missing_chatbot_returns_404(self):
        provider = FakeProvider(["never"])

        for chatbot_id in ("999999", "not-a-number"):
            response, _ = self._chat(provider, chatbot_id=chatbot_id)
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json(), {'error': 'Chatbot not found'})

        self.assertFalse(WidgetMessage.objects.exists())
        self.assertEqual(provider.calls, [])

    def test_blank_message_or_session_returns_400(self):
        provider = FakeProvider(["never"])

        response, _ = self._chat(provider, message="   ")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {'error': 'Message and session ID are required'})

        response, _ = self._chat(provider, session_id="")
        self.assertEqual(response.status_code, 400)

        self.assertFalse(WidgetConversation.objects.exists())
        self.assertEqual(provider.calls, [])

    def test_message_and_session_are_stored_as_sent(self):
        provider = FakeProvider(["ok"])

        self._chat(provider, message="  Hola ", session_id=" S1")
        self._chat(provider, message="again", session_id="S1")

        self.assertEqual(
            sorted(WidgetConversation.objects.values_list('session_id', flat=True)),
            [" S1", "S1"],
        )
        padded = WidgetConversation.objects.get(chatbot=self.chatbot, session_id=" S1")
        self.assertEqual(padded.messages.get(role='user').content, "  Hola ")
        self.assertEqual(provider.calls[0]['messages'][1], {'role': 'user', 'content': '  Hola '})

        response = self.client.post(self._rate_url(), {'sessionId': ' S1', 'rating': 5}, format='json')
        self.assertEqual(response.status_code, 201)
        self.assertEqual(ConversationRating.objects.get().conversation_id, padded.id)

    def test_failure_before_first_fragment_returns_json_error(self):
        provider = FakeProvider(fail_before=LLMAuthenticationError(backend_message="Incorrect API key provided: sk-abc"))

        response, _ = self._chat(provider)

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json(), {'error': GENERIC_PROVIDER_ERROR})
        self.assertNotIn('sk-abc', response.content.decode())
        messages = list(WidgetMessage.objects.order_by('id'))
        self.assertEqual([m.role for m in messages], ['user'])

    def test_provider_timeout_before_streaming_returns_504(self):
        provider = FakeProvider(fail_before=LLMTimeoutError())

        response, _ = self._chat(provider)

        self.assertEqual(response.status_code, 504)
        self.assertEqual(WidgetMessage.objects.filter(role='assistant').count(), 0)

    def test_mid_stream_failure_persists_partial_reply_and_sends_error_frame(self):
        provider = FakeProvider(["Par", "tial", "never sent"], fail_at=2)

        response, events = self._chat(provider)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(events, [{'content': 'Par'}, {'content': 'tial'}, {'error': GENERIC_PROVIDER_ERROR}])
        assistant = WidgetMessage.objects.get(role='assistant')
        self.assertEqual(assistant.content, "Partial")
        self.assertGreaterEqual(assistant.response_time_ms, 1)
        self.assertTrue(provider.closed)

    def test_unexpected_stream_failure_still_ends_with_error_frame(self):
        provider = FakeProvider(["Par", "never sent"], fail_at=1, fail_with=KeyError("content"))

        response, events = self._chat(provider)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(events, [{'content': 'Par'}, {'error': GENERIC_PROVIDER_ERROR}])
        self.assertEqual(WidgetMessage.objects.get(role='assistant').content, "Par")
        self.assertTrue(provider.closed)

    def test_preflight_request_allows_any_origin(self):
        response = self.client.options(self._chat_url())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Access-Control-Allow-Origin'], '*')
        self.assertIn('POST', response['Access-Control-Allow-Methods'])


class WidgetChatPipelineTests(WidgetTestMixin, TestCase):
    def _pipeline(self, provider):
        return WidgetChatPipeline(registry=registry_for(provider))

    def test_prepare_validates_before_any_write(self):
        pipeline = self._pipeline(FakeProvider())

        with self.assertRaises(InvalidChatRequest):
            pipeline.prepare(self.chatbot.id, "", "session_1")

        self.chatbot.is_active = False
        self.chatbot.save()
        with self.assertRaises(ChatbotInactive):
            pipeline.prepare(self.chatbot.id, "Hello", "session_1")

        self.assertFalse(WidgetConversation.objects.exists())

    def test_user_message_is_persisted_before_provider_call(self):
        provider = FakeProvider(fail_before=LLMServiceUnavailableError())
        pipeline = self._pipeline(provider)

        prepared = pipeline.prepare(self.chatbot.id, "Hello", "session_1")
        self.assertEqual(WidgetMessage.objects.get().content, "Hello")

        with self.assertRaises(LLMServiceUnavailableError):
            pipeline.start(prepared)
        self.assertEqual(WidgetMessage.objects.count(), 1)

    def test_disconnect_persists_partial_reply_and_closes_provider(self):
        provider = FakeProvider(["Hel", "lo", " world"])
        pipeline = self._pipeline(provider)
        turn = pipeline.start(pipeline.prepare(self.chatbot.id, "Hello", "session_1"))

        frames = pipeline.relay(turn)
        self.assertEqual(next(frames), 'data: {"content": "Hel"}\n\n')
        self.assertEqual(next(frames), 'data: {"content": "lo"}\n\n')
        frames.close()

        assistant = WidgetMessage.objects.get(role='assistant')
        self.assertEqual(assistant.content, "Hello")
        self.assertTrue(provider.closed)

    def test_disconnect_after_completion_does_not_persist_twice(self):
        provider = FakeProvider(["done"])
        pipeline = self._pipeline(provider)
        turn = pipeline.start(pipeline.prepare(self.chatbot.id, "Hello", "session_1"))

        frames = pipeline.relay(turn)
        next(frames)
        done_frame = next(frames)
        frames.close()

        self.assertIn('"done": true', done_frame)
        self.assertEqual(WidgetMessage.objects.filter(role='assistant').count(), 1)

    def test_empty_completion_is_persisted_as_empty_reply(self):
        provider = FakeProvider([])
        pipeline = self._pipeline(provider)
        turn = pipeline.start(pipeline.prepare(self.chatbot.id, "Hello", "session_1"))

        frames = list(pipeline.relay(turn))

        self.assertEqual(len(frames), 1)
        self.assertIn('"done": true', frames[0])
        self.assertEqual(WidgetMessage.objects.get(role='assistant').content, "")

    def test_error_frame_is_sent_when_partial_reply_cannot_be_saved(self):
        provider = FakeProvider(["Par", "tial", "never sent"], fail_at=2)
        pipeline = self._pipeline(provider)
        turn = pipeline.start(pipeline.prepare(self.chatbot.id, "Hello", "session_1"))

        def failing_append(conversation, role, content, response_time_ms=None):
            raise DatabaseError("database is locked")

        with patch('chatbots.pipeline.append_message', side_effect=failing_append) as mock_append:
            with self.assertLogs('chatbots.pipeline', level='ERROR') as logs:
                frames = list(pipeline.relay(turn))

        self.assertEqual(frames[-1], 'data: {"error": "Failed to get AI response"}\n\n')
        self.assertEqual(len(frames), 3)
        mock_append.assert_called_once()
        self.assertIn("Could not persist partial reply", "\n".join(logs.output))
        self.assertEqual(WidgetMessage.objects.filter(role='assistant').count(), 0)
        self.assertTrue(provider.closed)

    def test_error_frame_is_sent_when_completed_reply_cannot_be_saved(self):
        provider = FakeProvider(["All", " done"])
        pipeline = self._pipeline(provider)
        turn = pipeline.start(pipeline.prepare(self.chatbot.id, "Hello", "session_1"))

        with patch('chatbots.pipeline.append_message', side_effect=DatabaseError("disk I/O error")) as mock_append:
            with self.assertLogs('chatbots.pipeline', level='ERROR'):
                frames = list(pipeline.relay(turn))

        self.assertEqual(frames[-1], 'data: {"error": "Failed to get AI response"}\n\n')
        self.assertFalse(any('"done"' in frame for frame in frames))
        mock_append.assert_called_once()

    def test_conversation_created_by_a_concurrent_request_is_reused(self):
        existing = WidgetConversation.objects.create(chatbot=self.chatbot, session_id="session_1")
        original_get = QuerySet.get
        lookups = []

        def get_missing_first(queryset, *args, **kwargs):
            # The first lookup runs before the other request's insert lands.
            lookups.append(kwargs)
            if len(lookups) == 1:
                raise WidgetConversation.DoesNotExist()
            return original_get(queryset, *args, **kwargs)

        with patch.object(QuerySet, 'get', autospec=True, side_effect=get_missing_first):
            conversation = find_or_create_conversation(self.chatbot, "session_1")

        self.assertEqual(conversation.id, existing.id)
        self.assertEqual(len(lookups), 2)
        self.assertEqual(WidgetConversation.objects.count(), 1)

    def test_find_or_create_conversation_is_idempotent(self):
        first = find_or_create_conversation(self.chatbot, "session_1")
        second = find_or_create_conversation(self.chatbot, "session_1")

        self.assertEqual(first.id, second.id)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                WidgetConversation.objects.create(chatbot=self.chatbot, session_id="session_1")
        self.assertEqual(WidgetConversation.objects.count(), 1)


class WidgetConfigAndRatingTests(WidgetTestMixin, TestCase):
    def test_config_returns_public_appearance(self):
        response = self.client.get(self._config_url())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Access-Control-Allow-Origin'], '*')
        self.assertEqual(response.json(), {
            'id': self.chatbot.id,
            'name': 'Support Bot',
            'primaryColor': '#3B82F6',
            'textColor': '#FFFFFF',
            'position': 'bottom-right',
            'welcomeMessage': 'Hello! How can I help you today?',
            'avatarImage': None,
        })

    def test_config_for_inactive_or_missing_chatbot(self):
        self.assertEqual(self.client.get(self._config_url("424242")).status_code, 404)

        self.chatbot.is_active = False
        self.chatbot.save()
        self.assertEqual(self.client.get(self._config_url()).status_code, 403)

    def test_conversation_can_be_rated_once(self):
        self._chat(FakeProvider(["hi"]), session_id="session_r")

        response = self.client.post(self._rate_url(), {'sessionId': 'session_r', 'rating': 4, 'feedback': 'Nice'}, format='json')
        self.assertEqual(response.status_code, 201)
        rating = ConversationRating.objects.get()
        self.assertEqual((rating.rating, rating.feedback), (4, 'Nice'))

        response = self.client.post(self._rate_url(), {'sessionId': 'session_r', 'rating': 1}, format='json')
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json(), {'error': 'Conversation already rated'})
        self.assertEqual(ConversationRating.objects.get().rating, 4)

    def test_rating_validation_and_lookup_errors(self):
        self._chat(FakeProvider(["hi"]), session_id="session_r")

        response = self.client.post(self._rate_url(), {'sessionId': 'session_r', 'rating': 6}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertIn('rating', response.json()['details'])

        response = self.client.post(self._rate_url(), {'sessionId': 'unknown', 'rating': 3}, format='json')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'error': 'Conversation not found'})

        response = self.client.post(self._rate_url("424242"), {'sessionId': 'session_r', 'rating': 3}, format='json')
        self.assertEqual(response.status_code, 404)
        self.assertFalse(ConversationRating.objects.exists())


class OwnerApiTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="owner@example.com", email="owner@example.com", password="password")
        token_instance, _ = AuthToken.objects.create(self.user)
        self.token_key = token_instance.token_key
        self.other_user = User.objects.create_user(username="other@example.com", email="other@example.com", password="password")
        self.client = APIClient()

    def test_register_and_login_return_token(self):
        response = self.client.post(
            reverse('register'), {'email': 'New@Example.com', 'password': 's3cret-pass'}, format='json'
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['user']['username'], 'new@example.com')

        response = self.client.post(reverse('login'), {'email': 'new@example.com', 'password': 's3cret-pass'}, format='json')
        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()['token'])

        response = self.client.post(reverse('login'), {'email': 'new@example.com', 'password': 'wrong'}, format='json')
        self.assertEqual(response.status_code, 400)

    def test_logout_invalidates_token(self):
        response = self.client.post(reverse('logout', kwargs={'token': self.token_key}))
        self.assertEqual(response.status_code, 200)

        response = self.client.get(reverse('chatbot-list', kwargs={'token': self.token_key}))
        self.assertIn(response.status_code, (401, 403))

    def test_create_chatbot_returns_embed_code_and_hides_custom_key(self):
        payload = {
            'name': 'Self hosted',
            'ai_provider': 'custom',
            'custom_endpoint': 'http://llm.internal:8000/v1',
            'custom_api_key': 'local-secret',
            'custom_model_name': 'llama3',
        }
        response = self.client.post(reverse('chatbot-create', kwargs={'token': self.token_key}), payload, format='json')

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertNotIn('custom_api_key', data)
        self.assertTrue(data['has_custom_api_key'])
        self.assertIn(f'data-chatbot-id="{data["id"]}"', data['embed_code'])
        chatbot = Chatbot.objects.get(id=data['id'])
        self.assertEqual(chatbot.user, self.user)
        self.assertEqual(chatbot.custom_api_key, 'local-secret')

    def test_custom_provider_requires_endpoint(self):
        response = self.client.post(
            reverse('chatbot-create', kwargs={'token': self.token_key}),
            {'name': 'Broken', 'ai_provider': 'custom'},
            format='json',
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn('custom_endpoint', response.json()['details'])

    def test_chatbots_are_scoped_to_owner(self):
        mine = Chatbot.objects.create(user=self.user, name="Mine")
        theirs = Chatbot.objects.create(user=self.other_user, name="Theirs")

        response = self.client.get(reverse('chatbot-list', kwargs={'token': self.token_key}))
        self.assertEqual([c['id'] for c in response.json()], [mine.id])

        response = self.client.get(reverse('chatbot-detail', kwargs={'token': self.token_key, 'id': theirs.id}))
        self.assertEqual(response.status_code, 404)

        response = self.client.post(
            reverse('knowledge-create', kwargs={'token': self.token_key}),
            {'chatbot': theirs.id, 'title': 'Sneaky', 'content': 'x'},
            format='json',
        )
        self.assertEqual(response.status_code, 400)
        self.assertFalse(KnowledgeBaseItem.objects.exists())

    def test_knowledge_items_listed_newest_first(self):
        chatbot = Chatbot.objects.create(user=self.user, name="Mine")
        for title in ("First", "Second"):
            response = self.client.post(
                reverse('knowledge-create', kwargs={'token': self.token_key}),
                {'chatbot': chatbot.id, 'title': title, 'content': f'{title} content'},
                format='json',
            )
            self.assertEqual(response.status_code, 201)

        response = self.client.get(reverse('knowledge-list', kwargs={'token': self.token_key, 'chatbot_id': chatbot.id}))
        self.assertEqual([item['title'] for item in response.json()], ['Second', 'First'])

    def test_transcript_and_conversation_list(self):
        chatbot = Chatbot.objects.create(user=self.user, name="Mine")
        conversation = WidgetConversation.objects.create(chatbot=chatbot, session_id="s1")
        WidgetMessage.objects.create(conversation=conversation, role='user', content='Q1')
        WidgetMessage.objects.create(conversation=conversation, role='assistant', content='A1', response_time_ms=12)
        WidgetMessage.objects.create(conversation=conversation, role='user', content='Q2')
        ConversationRating.objects.create(conversation=conversation, rating=5)

        response = self.client.get(
            reverse('chatbot-conversations', kwargs={'token': self.token_key, 'chatbot_id': chatbot.id})
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()[0]['message_count'], 3)
        self.assertEqual(response.json()[0]['rating'], 5)

        response = self.client.get(
            reverse('conversation-messages', kwargs={'token': self.token_key, 'id': conversation.id})
        )
        self.assertEqual([(m['role'], m['content']) for m in response.json()], [('user', 'Q1'), ('assistant', 'A1'), ('user', 'Q2')])

    def test_deleting_chatbot_cascades(self):
        chatbot = Chatbot.objects.create(user=self.user, name="Mine")
        KnowledgeBaseItem.objects.create(chatbot=chatbot, title="t", content="c")
        conversation = WidgetConversation.objects.create(chatbot=chatbot, session_id="s1")
        WidgetMessage.objects.create(conversation=conversation, role='user', content='hi')
        ConversationRating.objects.create(conversation=conversation, rating=3)

        response = self.client.delete(reverse('chatbot-detail', kwargs={'token': self.token_key, 'id': chatbot.id}))

        self.assertEqual(response.status_code, 204)
        self.assertFalse(KnowledgeBaseItem.objects.exists())
        self.assertFalse(WidgetConversation.objects.exists())
        self.assertFalse(WidgetMessage.objects.exists())
        self.assertFalse(ConversationRating.objects.exists())


@skipUnlessDBFeature('test_db_allows_multiple_connections')
class ConcurrentConversationTests(TransactionTestCase):
    def setUp(self):
        user = User.objects.create_user(username="owner@example.com", email="owner@example.com", password="password")
        self.chatbot = Chatbot.objects.create(user=user, name="Support Bot")

    def test_simultaneous_first_messages_share_one_conversation(self):
        barrier = threading.Barrier(2)
        conversation_ids = []
        errors = []

        def first_message():
            try:
                barrier.wait(timeout=5)
                conversation_ids.append(find_or_create_conversation(self.chatbot, "race_session").id)
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=first_message) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(errors, [])
        self.assertEqual(len(conversation_ids), 2)
        self.assertEqual(conversation_ids[0], conversation_ids[1])
        self.assertEqual(WidgetConversation.objects.filter(chatbot=self.chatbot, session_id="race_session").count(), 1)
