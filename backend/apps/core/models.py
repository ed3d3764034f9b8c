"""
Core models - abstract bases shared by the billing models.
"""

from django.db import models


class TimestampedModel(models.Model):
    """Abstract base with created_at/updated_at."""

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class TenantScopedModel(TimestampedModel):
    """
    Abstract base for rows owned by one organization.

    Deleting the organization deletes its rows. The reverse accessor is
    ``organization.<model>_set`` (e.g. ``organizationfeature_set``).
    """

    organization = models.ForeignKey(
        "organizations.Organization",
        on_delete=models.CASCADE,
        related_name="%(class)s_set",
    )

    class Meta:
        abstract = True
