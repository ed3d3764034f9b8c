"""Core app configuration."""

from django.apps import AppConfig
from django.conf import settings


class CoreConfig(AppConfig):
    """Configuration for core app. Sets up structured logging on startup."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.core"

    def ready(self) -> None:
        from apps.core.logging import configure_logging

        configure_logging(
            json_format=getattr(settings, "LOG_JSON", True),
            log_level=getattr(settings, "LOG_LEVEL", "INFO"),
        )
