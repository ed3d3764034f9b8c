"""
Lifecycle sweep - advances time-driven subscription states.

For a subscription with period end E and plan grace G (days):
    now <= E         untouched
    E < now <= E+G   GRACE_PERIOD, grace_period_ends_at = E+G
    now > E+G        EXPIRED, organization put into maintenance mode

Each subscription is moved with a conditional update on its expected prior
status, so overlapping runs cannot apply a transition twice. A failure on one
subscription is recorded and the batch carries on.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from django.db import transaction
from django.utils import timezone

from apps.billing.audit import log_audit
from apps.billing.constants import EXPIRED_MAINTENANCE_MESSAGE, AuditEvent
from apps.billing.models import OrganizationSubscription
from apps.billing.services import invalidate_subscription_cache
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)

Status = OrganizationSubscription.Status


@dataclass
class SweepResult:
    processed: int = 0
    expired: int = 0
    grace_period: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def merge(self, other: "SweepResult") -> "SweepResult":
        return SweepResult(
            processed=self.processed + other.processed,
            expired=self.expired + other.expired,
            grace_period=self.grace_period + other.grace_period,
            errors=[*self.errors, *other.errors],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "expired": self.expired,
            "grace_period": self.grace_period,
            "errors": self.errors,
        }


def _transition(
    subscription: OrganizationSubscription,
    expected_status: str,
    new_status: str,
    now: datetime,
    grace_period_ends_at: datetime | None = None,
) -> bool:
    """
    Move one subscription if it is still in ``expected_status``.

    Returns False when another run got there first.
    """
    updates: dict[str, Any] = {"status": new_status, "updated_at": now}
    if grace_period_ends_at is not None:
        updates["grace_period_ends_at"] = grace_period_ends_at

    with transaction.atomic():
        updated = OrganizationSubscription.objects.filter(
            pk=subscription.pk, status=expected_status
        ).update(**updates)
        if not updated:
            return False

        org_fields: dict[str, Any] = {"subscription_status": new_status}
        if new_status == Status.EXPIRED:
            org_fields.update(is_maintenance_mode=True, maintenance_message=EXPIRED_MAINTENANCE_MESSAGE)
        Organization.objects.filter(pk=subscription.organization_id).update(**org_fields)

    invalidate_subscription_cache(subscription.organization_id)

    details: dict[str, Any] = {"period_end": subscription.current_period_end.isoformat()}
    if grace_period_ends_at is not None:
        details["grace_period_ends_at"] = grace_period_ends_at.isoformat()
    log_audit(
        subscription.organization_id,
        AuditEvent.SUBSCRIPTION_EXPIRED if new_status == Status.EXPIRED else AuditEvent.SUBSCRIPTION_GRACE_PERIOD,
        details=details,
        previous_status=expected_status,
        new_status=new_status,
    )
    logger.info(
        "subscription_status_swept",
        organization_id=str(subscription.organization_id),
        previous_status=expected_status,
        new_status=new_status,
    )
    return True


def _record_error(result: SweepResult, subscription: OrganizationSubscription, exc: Exception) -> None:
    logger.exception(
        "subscription_sweep_failed",
        subscription_id=subscription.pk,
        organization_id=str(subscription.organization_id),
    )
    result.errors.append(
        {
            "subscription_id": subscription.pk,
            "organization_id": str(subscription.organization_id),
            "error": str(exc),
        }
    )


def check_expired_subscriptions(now: datetime | None = None, dry_run: bool = False) -> SweepResult:
    """Move lapsed TRIAL/ACTIVE subscriptions into GRACE_PERIOD or EXPIRED."""
    now = now or timezone.now()
    result = SweepResult()

    candidates = OrganizationSubscription.objects.select_related("plan").filter(
        status__in=[Status.TRIAL, Status.ACTIVE],
        current_period_end__lt=now,
    )
    for subscription in candidates:
        result.processed += 1
        grace_end = subscription.current_period_end + timedelta(days=subscription.plan.grace_period_days)
        in_grace = now <= grace_end
        try:
            if dry_run:
                moved = True
            elif in_grace:
                moved = _transition(subscription, subscription.status, Status.GRACE_PERIOD, now, grace_end)
            else:
                moved = _transition(subscription, subscription.status, Status.EXPIRED, now)
        except Exception as exc:
            _record_error(result, subscription, exc)
            continue

        if moved and in_grace:
            result.grace_period += 1
        elif moved:
            result.expired += 1

    return result


def check_grace_period_expirations(now: datetime | None = None, dry_run: bool = False) -> SweepResult:
    """Move GRACE_PERIOD subscriptions whose grace window ended into EXPIRED."""
    now = now or timezone.now()
    result = SweepResult()

    candidates = OrganizationSubscription.objects.filter(
        status=Status.GRACE_PERIOD,
        grace_period_ends_at__lt=now,
    )
    for subscription in candidates:
        result.processed += 1
        try:
            moved = dry_run or _transition(subscription, Status.GRACE_PERIOD, Status.EXPIRED, now)
        except Exception as exc:
            _record_error(result, subscription, exc)
            continue
        if moved:
            result.expired += 1

    return result


def run_subscription_sweep(now: datetime | None = None, dry_run: bool = False) -> SweepResult:
    now = now or timezone.now()
    result = check_expired_subscriptions(now, dry_run=dry_run).merge(
        check_grace_period_expirations(now, dry_run=dry_run)
    )
    logger.info(
        "subscription_sweep_completed",
        processed=result.processed,
        expired=result.expired,
        grace_period=result.grace_period,
        errors=len(result.errors),
        dry_run=dry_run,
    )
    return result
