"""
Billing services - subscription lifecycle.

State machine:
    TRIAL -> ACTIVE (payment) | GRACE_PERIOD / EXPIRED (sweep)
    ACTIVE -> GRACE_PERIOD -> EXPIRED (sweep), ACTIVE (renewal),
              CANCELLED (cancel), SUSPENDED (admin)
    SUSPENDED -> ACTIVE | EXPIRED (reactivate, by current_period_end)

Every transition writes the subscription and its organization mirror in one
transaction, then invalidates the cache before returning. When the transition
runs inside a caller's transaction the invalidation repeats once that commits,
so entries read back from pre-commit rows do not outlive it.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from django.db import transaction
from django.utils import timezone

from apps.billing.audit import SYSTEM_ACTOR, Actor, log_audit
from apps.billing.constants import (
    BILLING_CYCLE_PERIODS,
    EXPIRED_MAINTENANCE_MESSAGE,
    SUSPENDED_MAINTENANCE_MESSAGE,
    AuditEvent,
)
from apps.billing.entitlements import initialize_organization_features, invalidate_organization_features
from apps.billing.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from apps.billing.models import OrganizationSubscription, SubscriptionPlan
from apps.core.cache import CACHE_MISS, get_cache_port, invalidate_now_and_on_commit
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)

Status = OrganizationSubscription.Status


@dataclass(frozen=True)
class PaymentConfirmation:
    """Confirmation handed over by the payment gateway."""

    transaction_id: str
    amount: Decimal | None = None
    invoice_url: str = ""


def period_length(billing_cycle: str) -> timedelta:
    try:
        return BILLING_CYCLE_PERIODS[billing_cycle]
    except KeyError:
        raise ValueError(f"Unknown billing cycle: {billing_cycle}") from None


def _subscription_key(org_id: Any) -> str:
    return f"subscription:org:{org_id}"


def invalidate_subscription_cache(org_id: Any) -> None:
    cache = get_cache_port()
    invalidate_now_and_on_commit(lambda: cache.delete(_subscription_key(org_id)))


def get_organization_subscription(org_id: Any) -> OrganizationSubscription | None:
    """Cached read of an organization's subscription (with plan)."""
    cache = get_cache_port()
    key = _subscription_key(org_id)
    cached = cache.get(key)
    if cached is not CACHE_MISS:
        return cached

    subscription = (
        OrganizationSubscription.objects.select_related("plan", "organization")
        .filter(organization_id=org_id)
        .first()
    )
    if subscription is not None:
        cache.set(key, subscription)
    return subscription


def get_subscription_or_404(org_id: Any) -> OrganizationSubscription:
    subscription = get_organization_subscription(org_id)
    if subscription is None:
        raise NotFoundError("Subscription not found", organizationId=str(org_id))
    return subscription


def _lock_subscription(org: Organization) -> OrganizationSubscription:
    """Fresh, row-locked subscription. Call inside transaction.atomic()."""
    subscription = (
        OrganizationSubscription.objects.select_for_update()
        .select_related("plan")
        .filter(organization=org)
        .first()
    )
    if subscription is None:
        raise NotFoundError("Subscription not found", organizationId=str(org.pk))
    return subscription


def _mirror_to_organization(org: Organization, subscription: OrganizationSubscription, **extra: Any) -> None:
    """Copy status, period and quotas onto the organization row."""
    fields = {
        "subscription_status": subscription.status,
        "subscription_start_at": subscription.current_period_start,
        "subscription_ends_at": subscription.current_period_end,
        **extra,
    }
    Organization.objects.filter(pk=org.pk).update(**fields)
    for name, value in fields.items():
        setattr(org, name, value)


def create_subscription(
    org: Organization,
    plan: SubscriptionPlan,
    billing_cycle: str = OrganizationSubscription.BillingCycle.MONTHLY,
    actor: Actor = SYSTEM_ACTOR,
    now: datetime | None = None,
) -> OrganizationSubscription:
    """
    Start a trial on ``plan`` for a newly onboarded organization.

    Raises:
        ConflictError: The organization already has a subscription.
    """
    now = now or timezone.now()
    period_length(billing_cycle)
    trial_end = now + timedelta(days=plan.trial_days)

    if OrganizationSubscription.objects.filter(organization=org).exists():
        raise ConflictError("Organization already has a subscription", organizationId=str(org.pk))

    with transaction.atomic():
        subscription = OrganizationSubscription.objects.create(
            organization=org,
            plan=plan,
            status=Status.TRIAL,
            billing_cycle=billing_cycle,
            current_period_start=now,
            current_period_end=trial_end,
            trial_ends_at=trial_end,
        )
        _mirror_to_organization(
            org,
            subscription,
            max_users=plan.max_users,
            storage_quota_mb=plan.max_storage_mb,
        )
        initialize_organization_features(org, plan)

    invalidate_subscription_cache(org.pk)
    invalidate_organization_features(org.pk)
    log_audit(
        org.pk,
        AuditEvent.SUBSCRIPTION_CREATED,
        details={"plan": plan.code, "billing_cycle": billing_cycle, "trial_ends_at": trial_end.isoformat()},
        new_status=Status.TRIAL,
        new_plan_id=plan.pk,
        actor=actor,
    )
    logger.info(
        "subscription_created",
        organization_id=str(org.pk),
        plan_code=plan.code,
        trial_ends_at=trial_end.isoformat(),
    )
    return subscription


def activate_subscription(
    org: Organization,
    payment: PaymentConfirmation | None = None,
    actor: Actor = SYSTEM_ACTOR,
    billing_cycle: str | None = None,
    now: datetime | None = None,
) -> OrganizationSubscription:
    """
    Start a new paid period: ``current_period_end = now + cycle length``.

    Clears trial and grace markers and maintenance mode.

    Raises:
        InvalidTransitionError: The subscription is suspended (reactivate first).
    """
    now = now or timezone.now()

    with transaction.atomic():
        subscription = _lock_subscription(org)
        if subscription.status == Status.SUSPENDED:
            raise InvalidTransitionError(
                "Suspended subscriptions must be reactivated first",
                subscriptionStatus=subscription.status,
            )
        previous_status = subscription.status

        cycle = billing_cycle or subscription.billing_cycle
        period_end = now + period_length(cycle)

        subscription.status = Status.ACTIVE
        subscription.billing_cycle = cycle
        subscription.current_period_start = now
        subscription.current_period_end = period_end
        subscription.trial_ends_at = None
        subscription.grace_period_ends_at = None
        subscription.next_billing_date = period_end
        subscription.renewal_reminder_sent = False
        subscription.cancelled_at = None
        subscription.cancel_reason = ""
        subscription.cancelled_by = None
        subscription.auto_renew = True
        if payment is not None:
            subscription.last_payment_id = payment.transaction_id
            subscription.last_payment_amount = payment.amount
            subscription.last_payment_date = now
        subscription.save()

        _mirror_to_organization(org, subscription, is_maintenance_mode=False, maintenance_message="")

    invalidate_subscription_cache(org.pk)
    log_audit(
        org.pk,
        AuditEvent.SUBSCRIPTION_ACTIVATED,
        details={
            "billing_cycle": cycle,
            "period_end": period_end.isoformat(),
            "transaction_id": payment.transaction_id if payment else "",
            "amount": str(payment.amount) if payment and payment.amount is not None else None,
        },
        previous_status=previous_status,
        new_status=Status.ACTIVE,
        actor=actor,
    )
    logger.info(
        "subscription_activated",
        organization_id=str(org.pk),
        previous_status=previous_status,
        period_end=period_end.isoformat(),
    )
    return subscription


def renew_subscription(
    org: Organization,
    payment: PaymentConfirmation | None = None,
    actor: Actor = SYSTEM_ACTOR,
    billing_cycle: str | None = None,
    now: datetime | None = None,
) -> OrganizationSubscription:
    """Renewal is an activation, optionally switching billing cycle."""
    return activate_subscription(org, payment, actor=actor, billing_cycle=billing_cycle, now=now)


def change_plan(
    org: Organization,
    new_plan: SubscriptionPlan,
    actor: Actor = SYSTEM_ACTOR,
) -> OrganizationSubscription:
    """
    Move the organization to ``new_plan``.

    Clears per-organization limit overrides, applies the plan's quotas and
    rebuilds every entitlement from the new plan. Existing add-on purchases
    do not survive the rebuild.
    """
    with transaction.atomic():
        subscription = _lock_subscription(org)
        previous_plan = subscription.plan

        subscription.plan = new_plan
        subscription.custom_max_users = None
        subscription.custom_max_storage_mb = None
        subscription.save()

        _mirror_to_organization(
            org,
            subscription,
            max_users=new_plan.max_users,
            storage_quota_mb=new_plan.max_storage_mb,
        )
        initialize_organization_features(org, new_plan)

    invalidate_subscription_cache(org.pk)
    invalidate_organization_features(org.pk)

    event = (
        AuditEvent.SUBSCRIPTION_UPGRADED
        if new_plan.price_monthly > previous_plan.price_monthly
        else AuditEvent.SUBSCRIPTION_DOWNGRADED
    )
    log_audit(
        org.pk,
        event,
        details={"from_plan": previous_plan.code, "to_plan": new_plan.code},
        previous_status=subscription.status,
        new_status=subscription.status,
        previous_plan_id=previous_plan.pk,
        new_plan_id=new_plan.pk,
        actor=actor,
    )
    logger.info(
        "subscription_plan_changed",
        organization_id=str(org.pk),
        from_plan=previous_plan.code,
        to_plan=new_plan.code,
    )
    return subscription


def cancel_subscription(
    org: Organization,
    reason: str = "",
    actor: Actor = SYSTEM_ACTOR,
    now: datetime | None = None,
) -> OrganizationSubscription:
    """
    Raises:
        InvalidTransitionError: Already cancelled.
    """
    now = now or timezone.now()

    with transaction.atomic():
        subscription = _lock_subscription(org)
        if subscription.status == Status.CANCELLED:
            raise InvalidTransitionError(
                "Subscription is already cancelled", subscriptionStatus=subscription.status
            )
        previous_status = subscription.status

        subscription.status = Status.CANCELLED
        subscription.cancelled_at = now
        subscription.cancel_reason = reason
        subscription.cancelled_by = actor.user
        subscription.auto_renew = False
        subscription.save()

        _mirror_to_organization(org, subscription)

    invalidate_subscription_cache(org.pk)
    log_audit(
        org.pk,
        AuditEvent.SUBSCRIPTION_CANCELLED,
        details={"reason": reason},
        previous_status=previous_status,
        new_status=Status.CANCELLED,
        actor=actor,
    )
    logger.info("subscription_cancelled", organization_id=str(org.pk), previous_status=previous_status)
    return subscription


def suspend_subscription(
    org: Organization,
    reason: str = "",
    actor: Actor = SYSTEM_ACTOR,
    message: str | None = None,
) -> OrganizationSubscription:
    """
    Administrative suspension; puts the organization into maintenance mode.

    Raises:
        InvalidTransitionError: Already suspended.
    """
    with transaction.atomic():
        subscription = _lock_subscription(org)
        if subscription.status == Status.SUSPENDED:
            raise InvalidTransitionError(
                "Subscription is already suspended", subscriptionStatus=subscription.status
            )
        previous_status = subscription.status

        subscription.status = Status.SUSPENDED
        subscription.save()

        _mirror_to_organization(
            org,
            subscription,
            is_maintenance_mode=True,
            maintenance_message=message or SUSPENDED_MAINTENANCE_MESSAGE,
        )

    invalidate_subscription_cache(org.pk)
    log_audit(
        org.pk,
        AuditEvent.SUBSCRIPTION_SUSPENDED,
        details={"reason": reason},
        previous_status=previous_status,
        new_status=Status.SUSPENDED,
        actor=actor,
    )
    logger.warning("subscription_suspended", organization_id=str(org.pk), reason=reason)
    return subscription


def reactivate_subscription(
    org: Organization,
    actor: Actor = SYSTEM_ACTOR,
    now: datetime | None = None,
) -> OrganizationSubscription:
    """
    Lift a suspension. Lands in ACTIVE, or EXPIRED if the period already ended.

    Raises:
        InvalidTransitionError: The subscription is not suspended.
    """
    now = now or timezone.now()

    with transaction.atomic():
        subscription = _lock_subscription(org)
        if subscription.status != Status.SUSPENDED:
            raise InvalidTransitionError(
                "Only suspended subscriptions can be reactivated",
                subscriptionStatus=subscription.status,
            )

        expired = subscription.current_period_end < now
        subscription.status = Status.EXPIRED if expired else Status.ACTIVE
        subscription.save()

        if expired:
            _mirror_to_organization(
                org, subscription, is_maintenance_mode=True, maintenance_message=EXPIRED_MAINTENANCE_MESSAGE
            )
        else:
            _mirror_to_organization(org, subscription, is_maintenance_mode=False, maintenance_message="")

    invalidate_subscription_cache(org.pk)
    log_audit(
        org.pk,
        AuditEvent.SUBSCRIPTION_REACTIVATED,
        previous_status=Status.SUSPENDED,
        new_status=subscription.status,
        actor=actor,
    )
    logger.info("subscription_reactivated", organization_id=str(org.pk), new_status=subscription.status)
    return subscription


# --- Summary --------------------------------------------------------------


def days_until(moment: datetime | None, now: datetime) -> int | None:
    """Whole days left until ``moment``, rounded up. Negative once passed."""
    if moment is None:
        return None
    return math.ceil((moment - now).total_seconds() / 86400)


def generate_alerts(
    subscription: OrganizationSubscription | None,
    days_remaining: int | None,
    usage: dict[str, Any] | None,
) -> list[dict[str, str]]:
    """Human-readable alerts for the subscription status screen."""
    if subscription is None:
        return [{"type": "error", "message": "No subscription found. Please contact support."}]

    alerts = []
    status = subscription.status
    if status == Status.TRIAL:
        alerts.append({"type": "info", "message": f"Trial period: {days_remaining} days remaining"})
        if days_remaining is not None and days_remaining <= 3:
            alerts.append(
                {
                    "type": "warning",
                    "message": "Trial ending soon. Please upgrade to continue using all features.",
                }
            )
    elif status == Status.GRACE_PERIOD:
        alerts.append(
            {
                "type": "warning",
                "message": f"Grace period: {days_remaining} days remaining. "
                "Please renew to avoid service interruption.",
            }
        )
    elif status == Status.EXPIRED:
        alerts.append({"type": "error", "message": "Subscription expired. Please renew to restore full access."})
    elif status == Status.SUSPENDED:
        alerts.append({"type": "error", "message": "Subscription suspended. Please contact support."})
    elif status == Status.ACTIVE and days_remaining is not None and 0 < days_remaining <= 7:
        alerts.append({"type": "warning", "message": f"Subscription renews in {days_remaining} days"})

    if usage:
        for label, field in (("User", "users_quota_percent"), ("Storage", "storage_quota_percent")):
            percent = usage.get(field)
            if percent is not None and percent >= 90:
                alerts.append(
                    {"type": "warning", "message": f"{label} quota at {percent:.0f}%. Consider upgrading."}
                )
    return alerts


def get_subscription_summary(org: Organization, now: datetime | None = None) -> dict[str, Any]:
    """Status overview for organization admins."""
    from apps.billing.entitlements import get_organization_features
    from apps.billing.payment_requests import get_pending_payment_requests
    from apps.billing.usage import get_usage_summary

    now = now or timezone.now()
    subscription = get_organization_subscription(org.pk)

    days_remaining = None
    usage = None
    pending = 0
    if subscription is not None:
        boundary = (
            subscription.grace_period_ends_at
            if subscription.status == Status.GRACE_PERIOD
            else subscription.current_period_end
        )
        days_remaining = days_until(boundary, now)
        usage = get_usage_summary(org, now=now)
        pending = len(get_pending_payment_requests(org, now=now))

    features = get_organization_features(org.pk, now=now)
    enabled = [status.code for status in features if status.is_enabled]

    return {
        "organization_id": str(org.pk),
        "status": subscription.status if subscription else None,
        "plan": subscription.plan.code if subscription else None,
        "billing_cycle": subscription.billing_cycle if subscription else None,
        "current_period_end": subscription.current_period_end if subscription else None,
        "days_remaining": days_remaining,
        "is_maintenance_mode": org.is_maintenance_mode,
        "pending_payment_requests": pending,
        "enabled_features": enabled,
        "disabled_features": [status.code for status in features if not status.is_enabled],
        "usage": usage,
        "alerts": generate_alerts(subscription, days_remaining, usage),
    }
