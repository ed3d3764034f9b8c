"""
Usage meter.

Usage is bucketed per calendar period (daily: start of day, monthly: first
of month, yearly: Jan 1). ``record_usage`` adds deltas with an atomic
``F()`` update so concurrent writers do not lose increments; ``set_usage``
overwrites gauge metrics (active users, storage) with a measured value.
"""

from datetime import datetime, timedelta
from typing import Any

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from apps.billing.models import OrganizationUsage
from apps.billing.services import get_subscription_or_404
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)

PeriodType = OrganizationUsage.PeriodType


def period_bounds(period_type: str, now: datetime) -> tuple[datetime, datetime]:
    """[start, end) of the calendar period containing ``now``."""
    if period_type == PeriodType.DAILY:
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=1)
    if period_type == PeriodType.MONTHLY:
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            return start, start.replace(year=start.year + 1, month=1)
        return start, start.replace(month=start.month + 1)
    if period_type == PeriodType.YEARLY:
        start = now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        return start, start.replace(year=start.year + 1)
    raise ValueError(f"Unknown period type: {period_type}")


def _validate_metrics(metrics: dict[str, int]) -> None:
    unknown = set(metrics) - set(OrganizationUsage.METRICS)
    if unknown:
        raise ValueError(f"Unknown usage metrics: {', '.join(sorted(unknown))}")
    for name, value in metrics.items():
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"Usage metric {name} must be an integer")


def _get_or_create_record(org: Organization, period_type: str, now: datetime) -> OrganizationUsage:
    subscription = get_subscription_or_404(org.pk)
    start, end = period_bounds(period_type, now)
    lookup = {"subscription_id": subscription.pk, "period_start": start, "period_type": period_type}
    try:
        with transaction.atomic():
            record, _ = OrganizationUsage.objects.get_or_create(**lookup, defaults={"period_end": end})
    except IntegrityError:
        # Lost the insert race; the row exists now.
        record = OrganizationUsage.objects.get(**lookup)
    return record


def record_usage(
    org: Organization,
    metrics_delta: dict[str, int],
    period_type: str = PeriodType.MONTHLY,
    now: datetime | None = None,
) -> OrganizationUsage:
    """
    Add ``metrics_delta`` to the current period's counters.

    Raises:
        ValueError: Unknown metric name, non-integer value or period type.
    """
    now = now or timezone.now()
    _validate_metrics(metrics_delta)
    record = _get_or_create_record(org, period_type, now)

    if metrics_delta:
        OrganizationUsage.objects.filter(pk=record.pk).update(
            **{name: F(name) + delta for name, delta in metrics_delta.items()}
        )
        record.refresh_from_db()

    logger.debug(
        "usage_recorded",
        organization_id=str(org.pk),
        period_type=period_type,
        metrics=metrics_delta,
    )
    return record


def set_usage(
    org: Organization,
    metrics: dict[str, int],
    period_type: str = PeriodType.MONTHLY,
    now: datetime | None = None,
) -> OrganizationUsage:
    """Overwrite counters with cumulative values."""
    now = now or timezone.now()
    _validate_metrics(metrics)
    record = _get_or_create_record(org, period_type, now)

    if metrics:
        OrganizationUsage.objects.filter(pk=record.pk).update(**metrics)
        record.refresh_from_db()
    return record


def get_usage(
    org: Organization,
    period_type: str = PeriodType.MONTHLY,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Counters for the current period; zeros when nothing was recorded."""
    now = now or timezone.now()
    subscription = get_subscription_or_404(org.pk)
    start, end = period_bounds(period_type, now)
    record = OrganizationUsage.objects.filter(
        subscription_id=subscription.pk, period_start=start, period_type=period_type
    ).first()

    metrics = record.metrics() if record else {name: 0 for name in OrganizationUsage.METRICS}
    return {"period_type": period_type, "period_start": start, "period_end": end, **metrics}


def _percent(used: int, limit: int | None) -> float | None:
    if not limit:
        return None
    return round(used * 100 / limit, 1)


def get_usage_summary(org: Organization, now: datetime | None = None) -> dict[str, Any]:
    """Monthly usage with quota percentages against the plan's limits."""
    subscription = get_subscription_or_404(org.pk)
    usage = get_usage(org, PeriodType.MONTHLY, now=now)
    plan = subscription.plan

    return {
        **usage,
        "max_users": subscription.effective_max_users,
        "max_storage_mb": subscription.effective_max_storage_mb,
        "users_quota_percent": _percent(usage["active_users"], subscription.effective_max_users),
        "storage_quota_percent": _percent(usage["storage_used_mb"], subscription.effective_max_storage_mb),
        "events_quota_percent": _percent(usage["events_created"], plan.max_events_per_month),
        "posts_quota_percent": _percent(usage["posts_created"], plan.max_posts_per_month),
        "emails_quota_percent": _percent(usage["emails_sent"], plan.max_emails_per_month),
        "push_quota_percent": _percent(usage["push_sent"], plan.max_push_per_month),
    }
