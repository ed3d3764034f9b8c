"""
Tests for the subscription lifecycle sweep.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from django.utils import timezone

from apps.billing import sweeper
from apps.billing.constants import EXPIRED_MAINTENANCE_MESSAGE
from apps.billing.models import OrganizationSubscription, SubscriptionAuditLog
from apps.billing.services import get_organization_subscription
from apps.billing.sweeper import (
    SweepResult,
    check_expired_subscriptions,
    check_grace_period_expirations,
    run_subscription_sweep,
)

from .factories import PlanFactory, SubscriptionFactory

Status = OrganizationSubscription.Status


@pytest.fixture
def period_end():
    return timezone.now().replace(microsecond=0)


def _subscription_ending(period_end, status=Status.ACTIVE, grace_days=7):
    return SubscriptionFactory(
        status=status,
        plan=PlanFactory(grace_period_days=grace_days),
        current_period_start=period_end - timedelta(days=30),
        current_period_end=period_end,
    )


@pytest.mark.django_db
class TestExpiryBoundaries:
    """Where a subscription lands relative to period end E and grace G."""

    def test_untouched_at_period_end(self, period_end) -> None:
        subscription = _subscription_ending(period_end)

        result = check_expired_subscriptions(now=period_end)

        subscription.refresh_from_db()
        assert subscription.status == Status.ACTIVE
        assert result.processed == 0

    def test_grace_just_after_period_end(self, period_end) -> None:
        subscription = _subscription_ending(period_end)

        result = check_expired_subscriptions(now=period_end + timedelta(seconds=1))

        subscription.refresh_from_db()
        assert subscription.status == Status.GRACE_PERIOD
        assert subscription.grace_period_ends_at == period_end + timedelta(days=7)
        assert result.grace_period == 1

    def test_grace_at_exact_grace_end(self, period_end) -> None:
        subscription = _subscription_ending(period_end)

        check_expired_subscriptions(now=period_end + timedelta(days=7))

        subscription.refresh_from_db()
        assert subscription.status == Status.GRACE_PERIOD

    def test_expired_after_grace_end(self, period_end) -> None:
        subscription = _subscription_ending(period_end)

        result = check_expired_subscriptions(now=period_end + timedelta(days=7, seconds=1))

        subscription.refresh_from_db()
        assert subscription.status == Status.EXPIRED
        assert result.expired == 1

    def test_trial_lapses_like_active(self, period_end) -> None:
        subscription = _subscription_ending(period_end, status=Status.TRIAL)

        check_expired_subscriptions(now=period_end + timedelta(days=1))

        subscription.refresh_from_db()
        assert subscription.status == Status.GRACE_PERIOD

    def test_zero_grace_expires_immediately(self, period_end) -> None:
        subscription = _subscription_ending(period_end, grace_days=0)

        check_expired_subscriptions(now=period_end + timedelta(seconds=1))

        subscription.refresh_from_db()
        assert subscription.status == Status.EXPIRED

    @pytest.mark.parametrize("status", [Status.CANCELLED, Status.SUSPENDED, Status.EXPIRED])
    def test_other_statuses_ignored(self, period_end, status) -> None:
        subscription = _subscription_ending(period_end, status=status)

        result = check_expired_subscriptions(now=period_end + timedelta(days=30))

        subscription.refresh_from_db()
        assert subscription.status == status
        assert result.processed == 0


@pytest.mark.django_db
class TestExpiredSubscriptionSideEffects:
    def test_expiry_enters_maintenance_mode(self, period_end) -> None:
        """A lapsed trial expires and the organization goes into maintenance."""
        subscription = _subscription_ending(period_end, status=Status.TRIAL)

        check_expired_subscriptions(now=period_end + timedelta(days=8))

        org = subscription.organization
        org.refresh_from_db()
        assert org.subscription_status == Status.EXPIRED
        assert org.is_maintenance_mode is True
        assert org.maintenance_message == EXPIRED_MAINTENANCE_MESSAGE

    def test_grace_does_not_enter_maintenance_mode(self, period_end) -> None:
        subscription = _subscription_ending(period_end)

        check_expired_subscriptions(now=period_end + timedelta(days=1))

        org = subscription.organization
        org.refresh_from_db()
        assert org.subscription_status == Status.GRACE_PERIOD
        assert org.is_maintenance_mode is False

    def test_invalidates_cached_subscription(self, period_end) -> None:
        subscription = _subscription_ending(period_end)
        org_id = subscription.organization_id
        assert get_organization_subscription(org_id).status == Status.ACTIVE

        check_expired_subscriptions(now=period_end + timedelta(days=1))

        assert get_organization_subscription(org_id).status == Status.GRACE_PERIOD

    def test_audited_as_system(self, period_end) -> None:
        subscription = _subscription_ending(period_end)

        check_expired_subscriptions(now=period_end + timedelta(days=1))

        entry = SubscriptionAuditLog.objects.get(organization_id=str(subscription.organization_id))
        assert entry.event_type == "SUBSCRIPTION_GRACE_PERIOD"
        assert entry.previous_status == Status.ACTIVE
        assert entry.new_status == Status.GRACE_PERIOD
        assert entry.performed_by == ""
        assert entry.performed_by_role == "SYSTEM"


@pytest.mark.django_db
class TestGracePeriodExpirations:
    def test_grace_window_over_expires(self, period_end) -> None:
        subscription = _subscription_ending(period_end, status=Status.GRACE_PERIOD)
        subscription.grace_period_ends_at = period_end + timedelta(days=7)
        subscription.save()

        result = check_grace_period_expirations(now=period_end + timedelta(days=8))

        subscription.refresh_from_db()
        assert subscription.status == Status.EXPIRED
        assert result.expired == 1

    def test_grace_window_open_untouched(self, period_end) -> None:
        subscription = _subscription_ending(period_end, status=Status.GRACE_PERIOD)
        subscription.grace_period_ends_at = period_end + timedelta(days=7)
        subscription.save()

        result = check_grace_period_expirations(now=period_end + timedelta(days=7))

        subscription.refresh_from_db()
        assert subscription.status == Status.GRACE_PERIOD
        assert result.processed == 0


@pytest.mark.django_db
class TestSweepRuns:
    """Whole-batch behaviour."""

    def test_rerun_is_idempotent(self, period_end) -> None:
        _subscription_ending(period_end)
        now = period_end + timedelta(days=1)

        first = run_subscription_sweep(now=now)
        second = run_subscription_sweep(now=now)

        assert first.grace_period == 1
        assert second.to_dict() == {"processed": 0, "expired": 0, "grace_period": 0, "errors": []}
        assert SubscriptionAuditLog.objects.count() == 1

    def test_stale_candidate_not_moved_twice(self, period_end) -> None:
        """A row changed by another run after selection is skipped."""
        subscription = _subscription_ending(period_end)
        OrganizationSubscription.objects.filter(pk=subscription.pk).update(status=Status.CANCELLED)

        moved = sweeper._transition(subscription, Status.ACTIVE, Status.GRACE_PERIOD, period_end)

        assert moved is False
        subscription.refresh_from_db()
        assert subscription.status == Status.CANCELLED

    def test_full_sweep_expires_after_grace(self, period_end) -> None:
        """Grace on the first pass, expiry once the grace window has gone."""
        subscription = _subscription_ending(period_end, grace_days=3)

        run_subscription_sweep(now=period_end + timedelta(days=1))
        result = run_subscription_sweep(now=period_end + timedelta(days=4))

        subscription.refresh_from_db()
        assert subscription.status == Status.EXPIRED
        assert result.expired == 1

    def test_failure_recorded_and_batch_continues(self, period_end) -> None:
        failing = _subscription_ending(period_end)
        healthy = _subscription_ending(period_end)
        real_transition = sweeper._transition

        def flaky(subscription, *args, **kwargs):
            if subscription.pk == failing.pk:
                raise RuntimeError("database hiccup")
            return real_transition(subscription, *args, **kwargs)

        with patch("apps.billing.sweeper._transition", side_effect=flaky):
            result = check_expired_subscriptions(now=period_end + timedelta(days=1))

        assert result.processed == 2
        assert result.grace_period == 1
        assert result.errors == [
            {
                "subscription_id": failing.pk,
                "organization_id": str(failing.organization_id),
                "error": "database hiccup",
            }
        ]
        healthy.refresh_from_db()
        assert healthy.status == Status.GRACE_PERIOD

    def test_dry_run_counts_without_writing(self, period_end) -> None:
        subscription = _subscription_ending(period_end)

        result = run_subscription_sweep(now=period_end + timedelta(days=10), dry_run=True)

        assert result.expired == 1
        subscription.refresh_from_db()
        assert subscription.status == Status.ACTIVE
        assert SubscriptionAuditLog.objects.count() == 0


class TestSweepResult:
    def test_merge_sums_counts_and_joins_errors(self) -> None:
        left = SweepResult(processed=2, expired=1, grace_period=1, errors=[{"error": "a"}])
        right = SweepResult(processed=1, expired=1, errors=[{"error": "b"}])

        merged = left.merge(right)

        assert merged.to_dict() == {
            "processed": 3,
            "expired": 2,
            "grace_period": 1,
            "errors": [{"error": "a"}, {"error": "b"}],
        }
