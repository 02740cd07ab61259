# chatbots/models.py


from django.contrib.auth.models import AbstractUser
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class User(AbstractUser):
    """Platform tenant. Every chatbot belongs to exactly one user."""

    language = models.CharField(max_length=10, default="en", blank=True)


class Chatbot(models.Model):
    PROVIDER_OPENAI = "openai"
    PROVIDER_GEMINI = "gemini"
    PROVIDER_CUSTOM = "custom"
    PROVIDER_CHOICES = [
        (PROVIDER_OPENAI, "OpenAI"),
        (PROVIDER_GEMINI, "Gemini"),
        (PROVIDER_CUSTOM, "Custom (OpenAI-compatible)"),
    ]

    POSITION_CHOICES = [
        ("bottom-right", "Bottom right"),
        ("bottom-left", "Bottom left"),
    ]

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="chatbots")
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, null=True)
    system_prompt = models.TextField(blank=True, null=True, default=DEFAULT_SYSTEM_PROMPT)
    ai_provider = models.CharField(max_length=20, choices=PROVIDER_CHOICES, default=PROVIDER_OPENAI)
    ai_model = models.CharField(max_length=100, default="gpt-5")
    custom_endpoint = models.URLField(
        max_length=500,
        blank=True,
        null=True,
        help_text="Base URL of a self-hosted OpenAI-compatible server (custom provider only).",
    )
    custom_api_key = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Optional bearer token for the self-hosted endpoint.",
    )
    custom_model_name = models.CharField(max_length=100, blank=True, null=True)
    primary_color = models.CharField(max_length=20, default="#3B82F6")
    text_color = models.CharField(max_length=20, default="#FFFFFF")
    position = models.CharField(max_length=20, choices=POSITION_CHOICES, default="bottom-right")
    welcome_message = models.TextField(default="Hello! How can I help you today?", blank=True)
    avatar_image = models.URLField(max_length=500, blank=True, null=True)
    temperature = models.FloatField(
        default=0.7, validators=[MinValueValidator(0.0), MaxValueValidator(2.0)]
    )
    max_tokens = models.PositiveIntegerField(default=1024)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "created_at"], name="chatbot_user_created_idx"),
        ]

    def clean(self):
        if self.ai_provider == self.PROVIDER_CUSTOM and not self.custom_endpoint:
            raise ValidationError("A custom endpoint is required for the custom provider.")

    @property
    def effective_system_prompt(self) -> str:
        return self.system_prompt or DEFAULT_SYSTEM_PROMPT

    def __str__(self):
        return f"Chatbot {self.id} - {self.name}"


class KnowledgeBaseItem(models.Model):
    SOURCE_CHOICES = [
        ("text", "Text"),
        ("url", "URL"),
        ("file", "File"),
    ]

    chatbot = models.ForeignKey(
        Chatbot, on_delete=models.CASCADE, related_name="knowledge_items", null=True, blank=True
    )
    title = models.CharField(max_length=255)
    content = models.TextField()
    source_type = models.CharField(max_length=10, choices=SOURCE_CHOICES, default="text")
    source_url = models.URLField(max_length=500, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["chatbot", "created_at"], name="kb_chatbot_created_idx"),
        ]

    def __str__(self):
        return self.title


class WidgetConversation(models.Model):
    """One end-visitor session with a chatbot."""

    chatbot = models.ForeignKey(Chatbot, on_delete=models.CASCADE, related_name="conversations")
    session_id = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["chatbot", "session_id"],
                name="unique_session_per_chatbot",
            ),
        ]
        indexes = [
            models.Index(fields=["chatbot", "created_at"], name="conv_chatbot_created_idx"),
        ]

    def __str__(self):
        return f"WidgetConversation {self.id} ({self.session_id})"


class WidgetMessage(models.Model):
    ROLE_USER = "user"
    ROLE_ASSISTANT = "assistant"
    ROLE_CHOICES = [
        (ROLE_USER, "User"),
        (ROLE_ASSISTANT, "Assistant"),
    ]

    id = models.BigAutoField(primary_key=True)
    conversation = models.ForeignKey(WidgetConversation, on_delete=models.CASCADE, related_name="messages")
    role = models.CharField(max_length=20, choices=ROLE_CHOICES)
    content = models.TextField(blank=True)
    response_time_ms = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Time to generate the response in milliseconds (assistant messages only).",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["conversation", "id"], name="widget_msg_conv_seq_idx"),
        ]

    def __str__(self):
        return f"WidgetMessage in {self.conversation_id} by {self.role}"


class ConversationRating(models.Model):
    conversation = models.OneToOneField(WidgetConversation, on_delete=models.CASCADE, related_name="rating")
    rating = models.PositiveSmallIntegerField(validators=[MinValueValidator(1), MaxValueValidator(5)])
    feedback = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"Rating {self.rating} for conversation {self.conversation_id}"
