from django.apps import AppConfig
import logging
from django.conf import settings

logger = logging.getLogger(__name__)


class ChatbotsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'chatbots'

    def ready(self):
        """Called when Django starts up"""
        self.validate_api_keys()

    def validate_api_keys(self):
        """
        Warn about missing platform credentials. Chatbots on a provider without a key
        still boot; their chat requests fail with a provider authentication error.
        """
        openai_key = getattr(settings, 'OPENAI_API_KEY', None)
        if not openai_key or openai_key.strip() == '':
            logger.warning("⚠️  OPENAI_API_KEY is not configured; chatbots using the OpenAI provider will fail.")
        else:
            logger.info("✅ OPENAI_API_KEY is configured")

        google_key = getattr(settings, 'GOOGLE_API_KEY', None)
        if not google_key or google_key.strip() == '':
            logger.warning("⚠️  GOOGLE_API_KEY is not configured; chatbots using the Gemini provider will fail.")
        else:
            logger.info("✅ GOOGLE_API_KEY is configured")

        logger.info(
            "Provider stream ceiling %ss, connect timeout %ss, %s attempt(s) before first token.",
            getattr(settings, 'LLM_STREAM_TIMEOUT', 120.0),
            getattr(settings, 'LLM_CONNECT_TIMEOUT', 10.0),
            getattr(settings, 'LLM_MAX_ATTEMPTS', 2),
        )
