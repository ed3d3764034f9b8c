"""
Billing models - feature catalog, plans, subscriptions and entitlements.
"""

from datetime import datetime

from django.conf import settings as django_settings
from django.db import models

from apps.core.models import TenantScopedModel, TimestampedModel
from apps.organizations.models import Organization


class Feature(TimestampedModel):
    """
    Gate-able product capability identified by a stable code.

    Never deleted, only deactivated, so historical entitlements and audit
    entries keep pointing at a real row.
    """

    code = models.CharField(max_length=50, unique=True, db_index=True)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=50, default="ENGAGEMENT")
    is_core = models.BooleanField(default=False, help_text="Always available, never gated")
    is_premium = models.BooleanField(default=False)
    is_add_on = models.BooleanField(default=False, help_text="Purchasable independent of plan")
    add_on_price_monthly = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True
    )
    add_on_price_yearly = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True
    )
    is_beta = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True, db_index=True)

    class Meta:
        ordering = ["category", "code"]

    def __str__(self) -> str:
        return self.code


class SubscriptionPlan(TimestampedModel):
    """Named bundle of included features and resource limits."""

    code = models.CharField(max_length=50, unique=True, db_index=True)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    price_monthly = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    price_yearly = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default="INR")

    # Limits
    max_users = models.PositiveIntegerField(default=100)
    max_storage_mb = models.PositiveIntegerField(default=5120)
    max_events_per_month = models.PositiveIntegerField(default=10)
    max_posts_per_month = models.PositiveIntegerField(default=50)
    max_emails_per_month = models.PositiveIntegerField(default=1000)
    max_push_per_month = models.PositiveIntegerField(default=5000)

    trial_days = models.PositiveIntegerField(default=14)
    grace_period_days = models.PositiveIntegerField(default=7)
    support_level = models.CharField(max_length=50, default="EMAIL")
    included_features = models.JSONField(
        default=list,
        blank=True,
        help_text="Feature codes granted by plan membership",
    )
    is_popular = models.BooleanField(default=False)
    sort_order = models.IntegerField(default=0)
    is_active = models.BooleanField(default=True, db_index=True)

    class Meta:
        ordering = ["sort_order", "price_monthly"]

    def __str__(self) -> str:
        return f"{self.code} ({self.name})"

    def includes(self, code: str) -> bool:
        return code in (self.included_features or [])


class PlanFeatureOverride(models.Model):
    """Per-plan override of a feature's enabled flag and limit."""

    plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.CASCADE,
        related_name="feature_overrides",
    )
    feature = models.ForeignKey(
        Feature,
        on_delete=models.CASCADE,
        related_name="plan_overrides",
    )
    is_enabled = models.BooleanField(default=True)
    limit = models.IntegerField(null=True, blank=True)
    limit_type = models.CharField(max_length=50, blank=True)

    class Meta:
        unique_together = [("plan", "feature")]

    def __str__(self) -> str:
        return f"{self.plan_id}:{self.feature_id}"


class OrganizationSubscription(TimestampedModel):
    """
    The single subscription of an organization.

    ``current_period_end`` is the expiry boundary for the current status.
    ``grace_period_ends_at`` is only meaningful while in GRACE_PERIOD.
    """

    class Status(models.TextChoices):
        TRIAL = "TRIAL", "Trial"
        ACTIVE = "ACTIVE", "Active"
        GRACE_PERIOD = "GRACE_PERIOD", "Grace Period"
        EXPIRED = "EXPIRED", "Expired"
        SUSPENDED = "SUSPENDED", "Suspended"
        CANCELLED = "CANCELLED", "Cancelled"

    class BillingCycle(models.TextChoices):
        MONTHLY = "MONTHLY", "Monthly"
        QUARTERLY = "QUARTERLY", "Quarterly"
        YEARLY = "YEARLY", "Yearly"

    organization = models.OneToOneField(
        Organization,
        on_delete=models.CASCADE,
        related_name="billing_subscription",
    )
    plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.TRIAL,
        db_index=True,
    )
    billing_cycle = models.CharField(
        max_length=20,
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField(db_index=True)
    trial_ends_at = models.DateTimeField(null=True, blank=True)
    grace_period_ends_at = models.DateTimeField(null=True, blank=True, db_index=True)
    auto_renew = models.BooleanField(default=True)

    # Per-organization overrides of plan limits
    custom_max_users = models.PositiveIntegerField(null=True, blank=True)
    custom_max_storage_mb = models.PositiveIntegerField(null=True, blank=True)

    # Last payment
    last_payment_id = models.CharField(max_length=255, blank=True)
    last_payment_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    last_payment_date = models.DateTimeField(null=True, blank=True)
    next_billing_date = models.DateTimeField(null=True, blank=True)
    renewal_reminder_sent = models.BooleanField(default=False)

    # Cancellation
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.TextField(blank=True)
    cancelled_by = models.ForeignKey(
        django_settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.organization_id} - {self.status}"

    @property
    def effective_max_users(self) -> int:
        return self.custom_max_users or self.plan.max_users

    @property
    def effective_max_storage_mb(self) -> int:
        return self.custom_max_storage_mb or self.plan.max_storage_mb


class OrganizationFeature(TenantScopedModel):
    """
    Entitlement record: one feature's state for one organization.

    A purchased add-on past ``add_on_expires_at`` grants no access whatever
    ``is_enabled`` says.
    """

    feature = models.ForeignKey(
        Feature,
        on_delete=models.CASCADE,
        related_name="organization_features",
    )
    is_enabled = models.BooleanField(default=False)
    enabled_at = models.DateTimeField(null=True, blank=True)
    disabled_at = models.DateTimeField(null=True, blank=True)
    disable_reason = models.CharField(max_length=255, blank=True)
    custom_limit = models.IntegerField(null=True, blank=True)
    custom_limit_type = models.CharField(max_length=50, blank=True)
    is_purchased_add_on = models.BooleanField(default=False)
    add_on_expires_at = models.DateTimeField(null=True, blank=True)
    add_on_payment_id = models.CharField(max_length=255, blank=True)
    last_modified_by = models.ForeignKey(
        django_settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    class Meta:
        unique_together = [("organization", "feature")]

    def __str__(self) -> str:
        return f"{self.organization_id}:{self.feature_id} ({'on' if self.is_enabled else 'off'})"

    def is_add_on_expired(self, now: datetime) -> bool:
        return bool(
            self.is_purchased_add_on
            and self.add_on_expires_at is not None
            and self.add_on_expires_at <= now
        )


class SubscriptionPaymentRequest(TimestampedModel):
    """
    Request for an organization to pay for a renewal, upgrade or add-ons.

    Approval is a business decision only. The subscription changes when the
    request is marked paid.
    """

    class RequestType(models.TextChoices):
        RENEWAL = "RENEWAL", "Renewal"
        UPGRADE = "UPGRADE", "Upgrade"
        ADD_ON = "ADD_ON", "Add-on"

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        APPROVED = "APPROVED", "Approved"
        REJECTED = "REJECTED", "Rejected"
        PAID = "PAID", "Paid"
        EXPIRED = "EXPIRED", "Expired"

    subscription = models.ForeignKey(
        OrganizationSubscription,
        on_delete=models.CASCADE,
        related_name="payment_requests",
    )
    request_type = models.CharField(max_length=20, choices=RequestType.choices)
    requested_plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )
    requested_add_ons = models.JSONField(default=list, blank=True)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="INR")
    billing_cycle = models.CharField(
        max_length=20,
        choices=OrganizationSubscription.BillingCycle.choices,
        default=OrganizationSubscription.BillingCycle.MONTHLY,
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    requested_by = models.ForeignKey(
        django_settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    request_note = models.TextField(blank=True)
    responded_by = models.ForeignKey(
        django_settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    responded_at = models.DateTimeField(null=True, blank=True)
    response_note = models.TextField(blank=True)
    payment_transaction_id = models.CharField(max_length=255, blank=True)
    paid_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    invoice_url = models.URLField(max_length=500, blank=True)
    expires_at = models.DateTimeField(db_index=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.request_type} {self.amount} {self.currency} ({self.status})"

    @property
    def organization_id(self):
        return self.subscription.organization_id

    def effective_status(self, now: datetime) -> str:
        """Stored status, except a PENDING request past expiry reads as EXPIRED."""
        if self.status == self.Status.PENDING and self.expires_at <= now:
            return self.Status.EXPIRED
        return self.status


class OrganizationUsage(models.Model):
    """Usage counters for one subscription in one calendar period."""

    class PeriodType(models.TextChoices):
        DAILY = "daily", "Daily"
        MONTHLY = "monthly", "Monthly"
        YEARLY = "yearly", "Yearly"

    METRICS = (
        "active_users",
        "storage_used_mb",
        "events_created",
        "posts_created",
        "emails_sent",
        "push_sent",
    )

    subscription = models.ForeignKey(
        OrganizationSubscription,
        on_delete=models.CASCADE,
        related_name="usage_records",
    )
    period_start = models.DateTimeField()
    period_end = models.DateTimeField()
    period_type = models.CharField(max_length=10, choices=PeriodType.choices)

    active_users = models.PositiveIntegerField(default=0)
    storage_used_mb = models.PositiveIntegerField(default=0)
    events_created = models.PositiveIntegerField(default=0)
    posts_created = models.PositiveIntegerField(default=0)
    emails_sent = models.PositiveIntegerField(default=0)
    push_sent = models.PositiveIntegerField(default=0)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = [("subscription", "period_start", "period_type")]
        ordering = ["-period_start"]

    def __str__(self) -> str:
        return f"{self.subscription_id} {self.period_type} {self.period_start:%Y-%m-%d}"

    def metrics(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in self.METRICS}


class SubscriptionAuditLog(models.Model):
    """
    Append-only audit trail of billing events.

    ``organization_id`` is a plain string so catalog events can be filed
    under "SYSTEM".
    """

    organization_id = models.CharField(max_length=64, db_index=True)
    event_type = models.CharField(max_length=50, db_index=True)
    event_details = models.JSONField(default=dict, blank=True)
    previous_status = models.CharField(max_length=20, blank=True)
    new_status = models.CharField(max_length=20, blank=True)
    previous_plan_id = models.CharField(max_length=64, blank=True)
    new_plan_id = models.CharField(max_length=64, blank=True)
    performed_by = models.CharField(max_length=64, blank=True)
    performed_by_role = models.CharField(max_length=20, default="SYSTEM")
    correlation_id = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self) -> str:
        return f"{self.organization_id} {self.event_type}"
