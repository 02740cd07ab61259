from django.core.management.base import BaseCommand, CommandError
from django.conf import settings
from django.db import DatabaseError, connection
from django.db.models import Q

from chatbots.models import Chatbot


class Command(BaseCommand):
    help = 'Validate provider credentials, stream bounds and the database connection'

    def handle(self, *args, **options):
        self.stdout.write(self.style.SUCCESS('🔍 Validating configuration...'))

        errors = []
        warnings = []

        # Hosted provider keys
        openai_key = getattr(settings, 'OPENAI_API_KEY', None)
        if not openai_key or openai_key.strip() == '':
            errors.append("❌ OPENAI_API_KEY is missing or empty (default provider)")
        elif not openai_key.startswith('sk-'):
            warnings.append("⚠️  OPENAI_API_KEY doesn't start with 'sk-' - might be invalid")
        else:
            self.stdout.write(self.style.SUCCESS("✅ OPENAI_API_KEY is configured"))

        google_key = getattr(settings, 'GOOGLE_API_KEY', None)
        if not google_key or google_key.strip() == '':
            warnings.append("⚠️  GOOGLE_API_KEY is missing; Gemini chatbots will fail")
        else:
            self.stdout.write(self.style.SUCCESS("✅ GOOGLE_API_KEY is configured"))

        # Stream bounds
        stream_timeout = getattr(settings, 'LLM_STREAM_TIMEOUT', 120.0)
        connect_timeout = getattr(settings, 'LLM_CONNECT_TIMEOUT', 10.0)
        if stream_timeout <= 0 or connect_timeout <= 0:
            errors.append("❌ LLM_STREAM_TIMEOUT and LLM_CONNECT_TIMEOUT must be positive")
        elif connect_timeout >= stream_timeout:
            warnings.append("⚠️  LLM_CONNECT_TIMEOUT is not smaller than LLM_STREAM_TIMEOUT")
        else:
            self.stdout.write(self.style.SUCCESS(f"✅ Stream ceiling {stream_timeout}s, connect timeout {connect_timeout}s"))

        # Database and chatbots that cannot be served
        try:
            connection.ensure_connection()
            self.stdout.write(self.style.SUCCESS("✅ Database connection successful"))
            broken = Chatbot.objects.filter(
                Q(custom_endpoint__isnull=True) | Q(custom_endpoint=''),
                ai_provider=Chatbot.PROVIDER_CUSTOM,
                is_active=True,
            )
            for chatbot in broken:
                warnings.append(f"⚠️  Chatbot {chatbot.id} uses the custom provider without an endpoint")
        except DatabaseError as e:
            errors.append(f"❌ Database connection failed: {e}")

        for warning in warnings:
            self.stdout.write(self.style.WARNING(warning))

        if errors:
            self.stdout.write(self.style.ERROR("\n🚨 CONFIGURATION ERRORS:"))
            for error in errors:
                self.stdout.write(self.style.ERROR(error))

            self.stdout.write(self.style.ERROR("\n💡 Provider keys are read from the environment or a .env file:"))
            self.stdout.write(self.style.ERROR("   export OPENAI_API_KEY='sk-your-api-key-here'"))
            self.stdout.write(self.style.ERROR("   export GOOGLE_API_KEY='your-google-api-key'"))

            raise CommandError("Configuration validation failed")

        self.stdout.write(self.style.SUCCESS("\n🎉 All configurations are valid!"))
