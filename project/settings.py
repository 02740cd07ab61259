from pathlib import Path

from .config import get_env_settings

env = get_env_settings()

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = env.django_secret_key
DEBUG = env.django_debug
ALLOWED_HOSTS = env.allowed_hosts_list

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "knox",
    "drf_yasg",
    "chatbots",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "project.urls"
WSGI_APPLICATION = "project.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

if env.db_name:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": env.db_name,
            "USER": env.db_user,
            "PASSWORD": env.db_password,
            "HOST": env.db_host,
            "PORT": env.db_port,
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

AUTH_USER_MODEL = "chatbots.User"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True
STATIC_URL = "static/"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "EXCEPTION_HANDLER": "chatbots.exceptions.widget_exception_handler",
    "UNAUTHENTICATED_USER": None,
}

SWAGGER_SETTINGS = {"USE_SESSION_AUTH": False}

# Provider configuration
OPENAI_API_KEY = env.openai_api_key
OPENAI_BASE_URL = env.openai_base_url
GOOGLE_API_KEY = env.google_api_key
DEFAULT_OPENAI_MODEL = env.default_openai_model
DEFAULT_GEMINI_MODEL = env.default_gemini_model
LLM_STREAM_TIMEOUT = env.llm_stream_timeout
LLM_CONNECT_TIMEOUT = env.llm_connect_timeout
LLM_MAX_ATTEMPTS = env.llm_max_attempts
CUSTOM_ENDPOINT_MAX_RETRIES = env.custom_endpoint_max_retries
WIDGET_BASE_URL = env.widget_base_url

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": env.log_level,
    },
    "loggers": {
        "django.db.backends": {"level": "WARNING"},
    },
}
