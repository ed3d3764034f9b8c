"""
Organizations models - multi-tenancy foundation.
"""

from django.db import models


class Organization(models.Model):
    """
    A tenant of the platform (one alumni association).

    Owns exactly one OrganizationSubscription. The subscription fields here
    mirror the subscription state so request gates can read them from the
    tenant without a join; they are written together with the subscription
    in a single transaction.
    """

    name = models.CharField(max_length=255)
    slug = models.SlugField(
        max_length=255,
        unique=True,
        help_text="URL-safe identifier, e.g. 'iit-alumni-2004'",
    )
    is_active = models.BooleanField(default=True)

    # Subscription mirror
    subscription_status = models.CharField(
        max_length=20,
        blank=True,
        db_index=True,
        help_text="Mirror of OrganizationSubscription.status",
    )
    subscription_start_at = models.DateTimeField(null=True, blank=True)
    subscription_ends_at = models.DateTimeField(null=True, blank=True)

    # Resource quotas (plan defaults or custom per-org values)
    max_users = models.PositiveIntegerField(default=100)
    storage_quota_mb = models.PositiveIntegerField(default=5120)

    # Set when the subscription is suspended or expired
    is_maintenance_mode = models.BooleanField(default=False)
    maintenance_message = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.name
