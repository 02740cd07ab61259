#  chatbots/urls.py

from django.urls import path
from drf_yasg import openapi
from drf_yasg.views import get_schema_view
from rest_framework import permissions

from .views import (
    RegisterAPI, LoginView, LogoutView,
    ChatbotCreateAPIView, ChatbotListAPIView, ChatbotRetrieveUpdateDestroyAPIView,
    KnowledgeBaseItemCreateAPIView, KnowledgeBaseItemListAPIView, KnowledgeBaseItemRetrieveDestroyAPIView,
    ChatbotConversationListAPIView, ConversationMessagesAPIView,
    WidgetConfigAPIView, WidgetChatAPIView, WidgetRateAPIView,
)

schema_view = get_schema_view(
    openapi.Info(
        title="Chat Widget API",
        default_version='v1',
        description="API documentation for the embeddable chat widget platform",
    ),
    public=True,
    permission_classes=(permissions.AllowAny,),
)

urlpatterns = [
    path('api-documentation/', schema_view.with_ui('redoc', cache_timeout=0), name='schema-redoc'),

    # Authentication
    path('register/', RegisterAPI.as_view(), name='register'),
    path('login/', LoginView.as_view(), name='login'),
    path('logout/<str:token>/', LogoutView.as_view(), name='logout'),

    # Chatbots
    path('chatbot/<str:token>/', ChatbotCreateAPIView.as_view(), name='chatbot-create'),
    path('chatbot/<str:token>/list/', ChatbotListAPIView.as_view(), name='chatbot-list'),
    path('chatbot/<str:token>/<int:id>/', ChatbotRetrieveUpdateDestroyAPIView.as_view(), name='chatbot-detail'),

    # Knowledge base
    path('knowledge-base/<str:token>/', KnowledgeBaseItemCreateAPIView.as_view(), name='knowledge-create'),
    path('knowledge-base/<str:token>/<int:chatbot_id>/list/', KnowledgeBaseItemListAPIView.as_view(), name='knowledge-list'),
    path('knowledge-base/<str:token>/item/<int:id>/', KnowledgeBaseItemRetrieveDestroyAPIView.as_view(), name='knowledge-detail'),

    # Conversations
    path('chatbot/<str:token>/<int:chatbot_id>/conversations/', ChatbotConversationListAPIView.as_view(), name='chatbot-conversations'),
    path('conversation/<str:token>/<int:id>/messages/', ConversationMessagesAPIView.as_view(), name='conversation-messages'),

    # Public widget API
    path('widget/<str:chatbot_id>/config', WidgetConfigAPIView.as_view(), name='widget-config'),
    path('widget/<str:chatbot_id>/chat', WidgetChatAPIView.as_view(), name='widget-chat'),
    path('widget/<str:chatbot_id>/rate', WidgetRateAPIView.as_view(), name='widget-rate'),
]
