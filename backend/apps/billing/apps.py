"""Billing app configuration."""

from django.apps import AppConfig


class BillingConfig(AppConfig):
    """Plans, feature entitlements and the subscription lifecycle."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.billing"
    label = "billing"
