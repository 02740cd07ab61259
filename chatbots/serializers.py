from django.contrib.auth import authenticate
from rest_framework import serializers

from .models import Chatbot, ConversationRating, KnowledgeBaseItem, User, WidgetConversation, WidgetMessage
from .utils import build_embed_code


class RegisterSerializer(serializers.ModelSerializer):
    password = serializers.CharField(write_only=True, help_text="Plain-text password used to create the account")
    language = serializers.CharField(required=False, allow_blank=True, help_text="UI language preference")

    class Meta:
        model = User
        fields = ('id', 'first_name', 'last_name', 'email', 'password', 'language')
        extra_kwargs = {'email': {'required': True}}

    def validate_email(self, value):
        email = (value or "").strip().lower()
        if not email:
            raise serializers.ValidationError("Email is required.")
        if User.objects.filter(username=email).exists() or User.objects.filter(email=email).exists():
            raise serializers.ValidationError("A user with this email already exists.")
        return email

    def create(self, validated_data):
        email = validated_data['email']
        return User.objects.create_user(
            username=email,
            email=email,
            password=validated_data['password'],
            first_name=validated_data.get('first_name', ''),
            last_name=validated_data.get('last_name', ''),
            language=validated_data.get('language') or 'en',
        )


class UserSerializer(serializers.ModelSerializer):
    class Meta:
        model = User
        fields = ('id', 'username', 'email', 'first_name', 'last_name', 'language')
        read_only_fields = ('id', 'username')


class LoginSerializer(serializers.Serializer):
    email = serializers.CharField(help_text="Email address used as the username")
    password = serializers.CharField(help_text="Plain-text password for authentication")

    def validate(self, attrs):
        email = (attrs.get('email') or '').strip().lower()
        password = attrs.get('password')

        if email and password:
            user = authenticate(request=self.context.get('request'), username=email, password=password)

            if not user:
                msg = 'Unable to log in with provided credentials.'
                raise serializers.ValidationError(msg, code='authorization')
        else:
            msg = 'Must include "email" and "password".'
            raise serializers.ValidationError(msg, code='authorization')

        attrs['user'] = user
        return attrs


class LoginResponseSerializer(serializers.Serializer):
    token = serializers.CharField(read_only=True, help_text="Token to place in token-scoped URLs")
    user = UserSerializer(read_only=True)


class MessageResponseSerializer(serializers.Serializer):
    message = serializers.CharField(read_only=True)


class ChatbotSerializer(serializers.ModelSerializer):
    custom_api_key = serializers.CharField(
        write_only=True, required=False, allow_blank=True, allow_null=True,
        help_text="Bearer token for the custom endpoint. Never returned."
    )
    has_custom_api_key = serializers.SerializerMethodField()
    embed_code = serializers.SerializerMethodField()

    class Meta:
        model = Chatbot
        fields = (
            'id', 'user', 'name', 'description', 'system_prompt',
            'ai_provider', 'ai_model', 'custom_endpoint', 'custom_api_key', 'has_custom_api_key', 'custom_model_name',
            'primary_color', 'text_color', 'position', 'welcome_message', 'avatar_image',
            'temperature', 'max_tokens', 'is_active', 'created_at', 'embed_code',
        )
        read_only_fields = ('id', 'user', 'created_at')

    def get_has_custom_api_key(self, obj):
        return bool(obj.custom_api_key)

    def get_embed_code(self, obj):
        return build_embed_code(obj)

    def validate_max_tokens(self, value):
        if value < 1:
            raise serializers.ValidationError("max_tokens must be at least 1.")
        return value

    def validate(self, data):
        provider = data.get('ai_provider', getattr(self.instance, 'ai_provider', Chatbot.PROVIDER_OPENAI))
        endpoint = data.get('custom_endpoint', getattr(self.instance, 'custom_endpoint', None))
        if provider == Chatbot.PROVIDER_CUSTOM and not endpoint:
            raise serializers.ValidationError({"custom_endpoint": "A custom endpoint is required for the custom provider."})
        return data


class KnowledgeBaseItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = KnowledgeBaseItem
        fields = ('id', 'chatbot', 'title', 'content', 'source_type', 'source_url', 'created_at')
        read_only_fields = ('id', 'created_at')
        extra_kwargs = {'chatbot': {'required': True, 'allow_null': False}}

    def validate_chatbot(self, value):
        user = self.context.get('user')
        if value is not None and user is not None and value.user_id != user.id:
            raise serializers.ValidationError("Chatbot not found.")
        return value


class WidgetConfigSerializer(serializers.ModelSerializer):
    """Public appearance of a chatbot, in the camelCase the embed script expects."""

    primaryColor = serializers.CharField(source='primary_color')
    textColor = serializers.CharField(source='text_color')
    welcomeMessage = serializers.CharField(source='welcome_message')
    avatarImage = serializers.CharField(source='avatar_image', allow_null=True)

    class Meta:
        model = Chatbot
        fields = ('id', 'name', 'primaryColor', 'textColor', 'position', 'welcomeMessage', 'avatarImage')


class WidgetChatRequestSerializer(serializers.Serializer):
    message = serializers.CharField(trim_whitespace=False, help_text="Visitor message")
    sessionId = serializers.CharField(trim_whitespace=False, help_text="Session identifier generated by the widget")


class RatingRequestSerializer(serializers.Serializer):
    sessionId = serializers.CharField(trim_whitespace=False)
    rating = serializers.IntegerField(min_value=1, max_value=5)
    feedback = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class ConversationRatingSerializer(serializers.ModelSerializer):
    class Meta:
        model = ConversationRating
        fields = ('id', 'conversation', 'rating', 'feedback', 'created_at')


class WidgetMessageSerializer(serializers.ModelSerializer):
    class Meta:
        model = WidgetMessage
        fields = ('id', 'role', 'content', 'response_time_ms', 'created_at')


class WidgetConversationSerializer(serializers.ModelSerializer):
    message_count = serializers.IntegerField(read_only=True)
    rating = serializers.SerializerMethodField()

    class Meta:
        model = WidgetConversation
        fields = ('id', 'chatbot', 'session_id', 'created_at', 'message_count', 'rating')

    def get_rating(self, obj):
        rating = getattr(obj, 'rating', None)
        return rating.rating if rating is not None else None
