import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db.models import Count
from django.http import Http404
from django.shortcuts import get_object_or_404
from django.utils.decorators import method_decorator
from drf_yasg import openapi
from drf_yasg.utils import swagger_auto_schema
from knox.models import AuthToken
from rest_framework import generics, status
from rest_framework.exceptions import AuthenticationFailed
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from .exceptions import GENERIC_PROVIDER_ERROR, ChatbotInactive, ConversationNotFound, provider_error_status
from .llm_providers import LLMProviderError
from .models import Chatbot, KnowledgeBaseItem, User, WidgetConversation, WidgetMessage
from .pipeline import WidgetChatPipeline
from .serializers import (
    ChatbotSerializer,
    ConversationRatingSerializer,
    KnowledgeBaseItemSerializer,
    LoginResponseSerializer,
    LoginSerializer,
    MessageResponseSerializer,
    RatingRequestSerializer,
    RegisterSerializer,
    UserSerializer,
    WidgetChatRequestSerializer,
    WidgetConfigSerializer,
    WidgetConversationSerializer,
    WidgetMessageSerializer,
)
from .storage import get_chatbot, submit_rating
from .streaming import event_stream_response
from .utils import get_authenticated_user

logger = logging.getLogger(__name__)

AUTH_TOKEN_PARAMETER = openapi.Parameter(
    'token', openapi.IN_PATH, description="Authentication token issued at login.", type=openapi.TYPE_STRING
)
CHATBOT_ID_PARAMETER = openapi.Parameter(
    'chatbot_id', openapi.IN_PATH, description="Chatbot ID", type=openapi.TYPE_INTEGER
)

# Swagger/Redoc tags for grouping endpoints
AUTH_TAG = "Authentication"
CHATBOT_TAG = "Chatbots"
KNOWLEDGE_TAG = "Knowledge Base"
CONVERSATION_TAG = "Conversations"
WIDGET_TAG = "Widget"


def tokenized_auto_schema(**kwargs):
    """Apply the auth token parameter to swagger/Redoc docs."""

    manual_parameters = kwargs.pop("manual_parameters", [])
    return swagger_auto_schema(manual_parameters=[AUTH_TOKEN_PARAMETER, *manual_parameters], **kwargs)


class TokenAuthenticatedMixin:
    """Mixin for token-based authentication."""
    permission_classes = [AllowAny]

    def initial(self, request, *args, **kwargs):
        try:
            authenticated_user = get_authenticated_user(kwargs.get('token'))
        except (Http404, DjangoValidationError, ValueError) as e:
            logger.warning(f"Authentication failed for request to '{request.path}': {e}")
            raise AuthenticationFailed(detail="Authentication failed: Invalid token.")
        request.user = authenticated_user
        self.user = authenticated_user
        logger.debug(f"TokenAuthenticatedMixin: User {self.user.username} (ID: {self.user.id}) authenticated for '{request.path}'.")
        super().initial(request, *args, **kwargs)


class PublicWidgetMixin:
    """Widget endpoints are called from arbitrary tenant sites: no auth, CORS open."""
    authentication_classes = []
    permission_classes = [AllowAny]

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        response['Access-Control-Allow-Origin'] = '*'
        response['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
        response['Access-Control-Allow-Headers'] = 'Content-Type'
        return response


# Authentication
class RegisterAPI(generics.CreateAPIView):
    queryset = User.objects.all()
    serializer_class = RegisterSerializer

    @swagger_auto_schema(
        operation_description="Create a platform account.",
        tags=[AUTH_TAG],
        request_body=RegisterSerializer,
        responses={status.HTTP_201_CREATED: UserSerializer},
    )
    def post(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        user = serializer.save()
        logger.info(f"Registered user '{user.username}' (ID: {user.id}).")
        headers = self.get_success_headers(serializer.data)
        return Response({"user": UserSerializer(user).data}, status=status.HTTP_201_CREATED, headers=headers)


class LoginView(generics.CreateAPIView):
    serializer_class = LoginSerializer

    @swagger_auto_schema(
        operation_description="Authenticate and return a session token.",
        tags=[AUTH_TAG],
        request_body=LoginSerializer,
        responses={status.HTTP_201_CREATED: LoginResponseSerializer},
    )
    def post(self, request, format=None):
        serializer = self.serializer_class(data=request.data, context={'request': request})
        serializer.is_valid(raise_exception=True)
        user = serializer.validated_data['user']
        token_instance, token = AuthToken.objects.create(user)
        logger.info(f"User {user.username} logged in.")
        return Response({
            'token': token_instance.token_key,
            'user': UserSerializer(user).data,
        }, status=status.HTTP_201_CREATED)


class LogoutView(TokenAuthenticatedMixin, APIView):
    @swagger_auto_schema(
        operation_description="Invalidate the provided authentication token.",
        manual_parameters=[AUTH_TOKEN_PARAMETER],
        tags=[AUTH_TAG],
        responses={status.HTTP_200_OK: MessageResponseSerializer},
    )
    def post(self, request, token=None, format=None):
        auth_token = get_object_or_404(AuthToken, token_key=token)
        auth_token.delete()
        return Response({'message': 'Logged out successfully.'}, status=status.HTTP_200_OK)


# Chatbot CRUD
@method_decorator(
    name='post',
    decorator=tokenized_auto_schema(
        operation_description="Create a chatbot for the authenticated user.",
        tags=[CHATBOT_TAG],
        request_body=ChatbotSerializer,
        responses={status.HTTP_201_CREATED: ChatbotSerializer},
    ),
)
class ChatbotCreateAPIView(TokenAuthenticatedMixin, generics.CreateAPIView):
    serializer_class = ChatbotSerializer

    def perform_create(self, serializer):
        chatbot = serializer.save(user=self.user)
        logger.info(f"Chatbot {chatbot.id} created for user '{self.user.username}' (ID: {self.user.id}).")


@method_decorator(
    name='get',
    decorator=tokenized_auto_schema(
        operation_description="List chatbots owned by the authenticated user.",
        tags=[CHATBOT_TAG],
        responses={status.HTTP_200_OK: ChatbotSerializer(many=True)},
    ),
)
class ChatbotListAPIView(TokenAuthenticatedMixin, generics.ListAPIView):
    serializer_class = ChatbotSerializer

    def get_queryset(self):
        return Chatbot.objects.filter(user=self.user).order_by('-created_at')


class ChatbotRetrieveUpdateDestroyAPIView(TokenAuthenticatedMixin, generics.RetrieveUpdateDestroyAPIView):
    serializer_class = ChatbotSerializer
    lookup_field = 'id'

    def get_queryset(self):
        return Chatbot.objects.filter(user=self.user)

    @swagger_auto_schema(
        operation_description="Retrieve a chatbot, including its embed code.",
        tags=[CHATBOT_TAG],
        manual_parameters=[AUTH_TOKEN_PARAMETER, openapi.Parameter('id', openapi.IN_PATH, description="Chatbot ID", type=openapi.TYPE_INTEGER)],
        responses={status.HTTP_200_OK: ChatbotSerializer},
    )
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)

    @swagger_auto_schema(
        operation_description="Update a chatbot.",
        tags=[CHATBOT_TAG],
        manual_parameters=[AUTH_TOKEN_PARAMETER, openapi.Parameter('id', openapi.IN_PATH, description="Chatbot ID", type=openapi.TYPE_INTEGER)],
        request_body=ChatbotSerializer,
        responses={status.HTTP_200_OK: ChatbotSerializer},
    )
    def put(self, request, *args, **kwargs):
        return super().put(request, *args, **kwargs)

    @swagger_auto_schema(
        operation_description="Partially update a chatbot.",
        tags=[CHATBOT_TAG],
        manual_parameters=[AUTH_TOKEN_PARAMETER, openapi.Parameter('id', openapi.IN_PATH, description="Chatbot ID", type=openapi.TYPE_INTEGER)],
        request_body=ChatbotSerializer,
        responses={status.HTTP_200_OK: ChatbotSerializer},
    )
    def patch(self, request, *args, **kwargs):
        return super().patch(request, *args, **kwargs)

    @swagger_auto_schema(
        operation_description="Delete a chatbot together with its knowledge items and conversations.",
        tags=[CHATBOT_TAG],
        manual_parameters=[AUTH_TOKEN_PARAMETER, openapi.Parameter('id', openapi.IN_PATH, description="Chatbot ID", type=openapi.TYPE_INTEGER)],
        responses={status.HTTP_204_NO_CONTENT: "Deleted"},
    )
    def delete(self, request, *args, **kwargs):
        return super().delete(request, *args, **kwargs)

    def perform_destroy(self, instance):
        logger.info(f"Deleting chatbot {instance.id} for user '{self.user.username}'.")
        instance.delete()


# Knowledge base
class KnowledgeBaseContextMixin:
    def get_serializer_context(self):
        context = super().get_serializer_context()
        context['user'] = self.user
        return context


@method_decorator(
    name='post',
    decorator=tokenized_auto_schema(
        operation_description="Attach a knowledge item to one of the user's chatbots.",
        tags=[KNOWLEDGE_TAG],
        request_body=KnowledgeBaseItemSerializer,
        responses={status.HTTP_201_CREATED: KnowledgeBaseItemSerializer},
    ),
)
class KnowledgeBaseItemCreateAPIView(TokenAuthenticatedMixin, KnowledgeBaseContextMixin, generics.CreateAPIView):
    serializer_class = KnowledgeBaseItemSerializer

    def perform_create(self, serializer):
        item = serializer.save()
        logger.info(f"Knowledge item {item.id} added to chatbot {item.chatbot_id}.")


@method_decorator(
    name='get',
    decorator=tokenized_auto_schema(
        operation_description="List knowledge items of a chatbot, newest first.",
        tags=[KNOWLEDGE_TAG],
        manual_parameters=[CHATBOT_ID_PARAMETER],
        responses={status.HTTP_200_OK: KnowledgeBaseItemSerializer(many=True)},
    ),
)
class KnowledgeBaseItemListAPIView(TokenAuthenticatedMixin, generics.ListAPIView):
    serializer_class = KnowledgeBaseItemSerializer

    def get_queryset(self):
        chatbot = get_object_or_404(Chatbot, id=self.kwargs['chatbot_id'], user=self.user)
        return KnowledgeBaseItem.objects.filter(chatbot=chatbot).order_by('-created_at', '-id')


class KnowledgeBaseItemRetrieveDestroyAPIView(TokenAuthenticatedMixin, generics.RetrieveDestroyAPIView):
    serializer_class = KnowledgeBaseItemSerializer
    lookup_field = 'id'

    def get_queryset(self):
        return KnowledgeBaseItem.objects.filter(chatbot__user=self.user)

    @swagger_auto_schema(
        operation_description="Retrieve a knowledge item.",
        tags=[KNOWLEDGE_TAG],
        manual_parameters=[AUTH_TOKEN_PARAMETER, openapi.Parameter('id', openapi.IN_PATH, description="Knowledge item ID", type=openapi.TYPE_INTEGER)],
        responses={status.HTTP_200_OK: KnowledgeBaseItemSerializer},
    )
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)

    @swagger_auto_schema(
        operation_description="Delete a knowledge item.",
        tags=[KNOWLEDGE_TAG],
        manual_parameters=[AUTH_TOKEN_PARAMETER, openapi.Parameter('id', openapi.IN_PATH, description="Knowledge item ID", type=openapi.TYPE_INTEGER)],
        responses={status.HTTP_204_NO_CONTENT: "Deleted"},
    )
    def delete(self, request, *args, **kwargs):
        return super().delete(request, *args, **kwargs)


# Conversations (owner side, read-only)
@method_decorator(
    name='get',
    decorator=tokenized_auto_schema(
        operation_description="List widget conversations of a chatbot, newest first.",
        tags=[CONVERSATION_TAG],
        manual_parameters=[CHATBOT_ID_PARAMETER],
        responses={status.HTTP_200_OK: WidgetConversationSerializer(many=True)},
    ),
)
class ChatbotConversationListAPIView(TokenAuthenticatedMixin, generics.ListAPIView):
    serializer_class = WidgetConversationSerializer

    def get_queryset(self):
        chatbot = get_object_or_404(Chatbot, id=self.kwargs['chatbot_id'], user=self.user)
        return (
            WidgetConversation.objects.filter(chatbot=chatbot)
            .select_related('rating')
            .annotate(message_count=Count('messages'))
            .order_by('-created_at', '-id')
        )


class ConversationMessagesAPIView(TokenAuthenticatedMixin, APIView):
    @swagger_auto_schema(
        operation_description="Full transcript of a widget conversation in the order it happened.",
        tags=[CONVERSATION_TAG],
        manual_parameters=[AUTH_TOKEN_PARAMETER, openapi.Parameter('id', openapi.IN_PATH, description="Conversation ID", type=openapi.TYPE_INTEGER)],
        responses={status.HTTP_200_OK: WidgetMessageSerializer(many=True)},
    )
    def get(self, request, token, id):
        conversation = WidgetConversation.objects.filter(id=id, chatbot__user=self.user).first()
        if conversation is None:
            raise ConversationNotFound()
        messages = WidgetMessage.objects.filter(conversation=conversation).order_by('id')
        return Response(WidgetMessageSerializer(messages, many=True).data, status=status.HTTP_200_OK)


# Public widget API
class WidgetConfigAPIView(PublicWidgetMixin, APIView):
    @swagger_auto_schema(
        operation_description="Public appearance settings used by the embed script.",
        tags=[WIDGET_TAG],
        responses={status.HTTP_200_OK: WidgetConfigSerializer},
    )
    def get(self, request, chatbot_id):
        chatbot = get_chatbot(chatbot_id)
        if not chatbot.is_active:
            raise ChatbotInactive()
        return Response(WidgetConfigSerializer(chatbot).data, status=status.HTTP_200_OK)


class WidgetChatAPIView(PublicWidgetMixin, APIView):
    @swagger_auto_schema(
        operation_description=(
            "Send a visitor message. The reply streams back as text/event-stream frames: "
            "`{content}` fragments, then `{done, responseTimeMs}` or `{error}`."
        ),
        tags=[WIDGET_TAG],
        request_body=WidgetChatRequestSerializer,
        responses={status.HTTP_200_OK: "text/event-stream"},
    )
    def post(self, request, chatbot_id):
        data = request.data if isinstance(request.data, dict) else {}
        pipeline = WidgetChatPipeline()
        prepared = pipeline.prepare(chatbot_id, data.get('message'), data.get('sessionId'))
        try:
            turn = pipeline.start(prepared)
        except LLMProviderError as exc:
            return Response({"error": GENERIC_PROVIDER_ERROR}, status=provider_error_status(exc))
        return event_stream_response(pipeline.relay(turn))


class WidgetRateAPIView(PublicWidgetMixin, APIView):
    @swagger_auto_schema(
        operation_description="Rate a widget conversation once (1 to 5, optional feedback).",
        tags=[WIDGET_TAG],
        request_body=RatingRequestSerializer,
        responses={status.HTTP_201_CREATED: ConversationRatingSerializer},
    )
    def post(self, request, chatbot_id):
        serializer = RatingRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        chatbot = get_chatbot(chatbot_id)
        rating = submit_rating(
            chatbot,
            serializer.validated_data['sessionId'],
            serializer.validated_data['rating'],
            serializer.validated_data.get('feedback'),
        )
        logger.info(f"Conversation {rating.conversation_id} rated {rating.rating}.")
        return Response(ConversationRatingSerializer(rating).data, status=status.HTTP_201_CREATED)
