"""
Billing API schemas - request/response types for billing endpoints.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from ninja import Schema
from pydantic import Field


# --- Catalog --------------------------------------------------------------


class FeatureResponse(Schema):
    id: int
    code: str
    name: str
    description: str
    category: str
    is_core: bool
    is_premium: bool
    is_add_on: bool
    add_on_price_monthly: Decimal | None
    add_on_price_yearly: Decimal | None
    is_beta: bool
    is_active: bool


class FeatureCreateRequest(Schema):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    category: str = "ENGAGEMENT"
    is_core: bool = False
    is_premium: bool = False
    is_add_on: bool = False
    add_on_price_monthly: Decimal | None = None
    add_on_price_yearly: Decimal | None = None
    is_beta: bool = False


class FeatureUpdateRequest(Schema):
    """Partial update; omitted fields are left unchanged."""

    name: str | None = None
    description: str | None = None
    category: str | None = None
    is_core: bool | None = None
    is_premium: bool | None = None
    is_add_on: bool | None = None
    add_on_price_monthly: Decimal | None = None
    add_on_price_yearly: Decimal | None = None
    is_beta: bool | None = None
    is_active: bool | None = None


class SeedFeaturesResponse(Schema):
    created: int


class PlanResponse(Schema):
    id: int
    code: str
    name: str
    description: str
    price_monthly: Decimal
    price_yearly: Decimal
    currency: str
    max_users: int
    max_storage_mb: int
    max_events_per_month: int
    max_posts_per_month: int
    max_emails_per_month: int
    max_push_per_month: int
    trial_days: int
    grace_period_days: int
    support_level: str
    included_features: list[str]
    is_popular: bool
    sort_order: int
    is_active: bool


class PlanCreateRequest(Schema):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    price_monthly: Decimal = Decimal("0")
    price_yearly: Decimal = Decimal("0")
    currency: str = "INR"
    max_users: int = 100
    max_storage_mb: int = 5120
    max_events_per_month: int = 10
    max_posts_per_month: int = 50
    max_emails_per_month: int = 1000
    max_push_per_month: int = 5000
    trial_days: int = 14
    grace_period_days: int = 7
    support_level: str = "EMAIL"
    included_features: list[str] = []
    is_popular: bool = False
    sort_order: int = 0


class PlanUpdateRequest(Schema):
    """Partial update; omitted fields are left unchanged."""

    name: str | None = None
    description: str | None = None
    price_monthly: Decimal | None = None
    price_yearly: Decimal | None = None
    currency: str | None = None
    max_users: int | None = None
    max_storage_mb: int | None = None
    max_events_per_month: int | None = None
    max_posts_per_month: int | None = None
    max_emails_per_month: int | None = None
    max_push_per_month: int | None = None
    trial_days: int | None = None
    grace_period_days: int | None = None
    support_level: str | None = None
    included_features: list[str] | None = None
    is_popular: bool | None = None
    sort_order: int | None = None
    is_active: bool | None = None


class PlanFeatureOverrideItem(Schema):
    feature_code: str
    is_enabled: bool = True
    limit: int | None = None
    limit_type: str | None = None


class SetPlanFeaturesRequest(Schema):
    features: list[PlanFeatureOverrideItem]


class PlanFeatureOverrideResponse(Schema):
    feature_code: str
    is_enabled: bool
    limit: int | None
    limit_type: str


class FeatureMatrixResponse(Schema):
    plans: list[str]
    features: list[dict[str, Any]]


# --- Subscription ---------------------------------------------------------


class SubscriptionResponse(Schema):
    organization_id: str
    plan_code: str
    plan_name: str
    status: str
    billing_cycle: str
    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: datetime | None
    grace_period_ends_at: datetime | None
    auto_renew: bool
    custom_max_users: int | None
    custom_max_storage_mb: int | None
    last_payment_id: str
    last_payment_amount: Decimal | None
    last_payment_date: datetime | None
    next_billing_date: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str


class AlertSchema(Schema):
    type: str
    message: str


class SubscriptionSummaryResponse(Schema):
    organization_id: str
    status: str | None
    plan: str | None
    billing_cycle: str | None
    current_period_end: datetime | None
    days_remaining: int | None
    is_maintenance_mode: bool
    pending_payment_requests: int
    enabled_features: list[str]
    disabled_features: list[str]
    usage: dict[str, Any] | None
    alerts: list[AlertSchema]


class FeatureStatusResponse(Schema):
    code: str
    name: str
    exists: bool
    is_enabled: bool
    is_core: bool
    is_premium: bool
    is_add_on: bool
    custom_limit: int | None
    custom_limit_type: str
    is_purchased_add_on: bool
    add_on_expires_at: datetime | None


class CreateSubscriptionRequest(Schema):
    plan: str = Field(..., description="Plan id or code")
    billing_cycle: str = "MONTHLY"


class RenewSubscriptionRequest(Schema):
    transaction_id: str = Field(..., min_length=1)
    amount: Decimal | None = None
    billing_cycle: str | None = None
    invoice_url: str = ""


class CancelSubscriptionRequest(Schema):
    reason: str = ""


class ChangePlanRequest(Schema):
    plan: str = Field(..., description="Plan id or code")


class SuspendSubscriptionRequest(Schema):
    reason: str = ""
    message: str | None = None


class ToggleFeatureRequest(Schema):
    enabled: bool
    reason: str = ""


class FeatureLimitRequest(Schema):
    limit: int | None
    limit_type: str = ""


class OrganizationFeatureResponse(Schema):
    feature_code: str
    is_enabled: bool
    custom_limit: int | None
    custom_limit_type: str
    is_purchased_add_on: bool
    add_on_expires_at: datetime | None


# --- Usage & audit --------------------------------------------------------


class UsageResponse(Schema):
    period_type: str
    period_start: datetime
    period_end: datetime
    active_users: int
    storage_used_mb: int
    events_created: int
    posts_created: int
    emails_sent: int
    push_sent: int


class AuditLogResponse(Schema):
    id: int
    organization_id: str
    event_type: str
    event_details: dict[str, Any]
    previous_status: str
    new_status: str
    previous_plan_id: str
    new_plan_id: str
    performed_by: str
    performed_by_role: str
    correlation_id: str
    created_at: datetime


# --- Payment requests -----------------------------------------------------


class PaymentRequestCreateRequest(Schema):
    organization_id: int
    request_type: str
    requested_plan: str | None = None
    requested_add_ons: list[str] = []
    amount: Decimal | None = None
    billing_cycle: str | None = None
    expiry_days: int | None = Field(None, ge=1, le=90)
    note: str = ""


class PaymentRequestResponse(Schema):
    id: int
    organization_id: str
    request_type: str
    requested_plan: str | None
    requested_add_ons: list[str]
    amount: Decimal
    currency: str
    billing_cycle: str
    status: str
    request_note: str
    response_note: str
    payment_transaction_id: str
    paid_amount: Decimal | None
    paid_at: datetime | None
    invoice_url: str
    expires_at: datetime
    created_at: datetime


class PaymentRequestDecisionRequest(Schema):
    note: str = ""


class PaymentRequestPayRequest(Schema):
    transaction_id: str = Field(..., min_length=1)
    amount: Decimal | None = None
    invoice_url: str = ""
