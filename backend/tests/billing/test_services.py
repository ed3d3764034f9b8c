"""
Tests for the subscription lifecycle services.
"""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from django.db import transaction
from django.utils import timezone

from apps.billing.audit import Actor
from apps.billing.entitlements import get_feature_status, has_feature_access
from apps.billing.exceptions import ConflictError, InvalidTransitionError
from apps.billing.models import OrganizationSubscription, SubscriptionAuditLog
from apps.billing.services import (
    PaymentConfirmation,
    activate_subscription,
    cancel_subscription,
    change_plan,
    create_subscription,
    generate_alerts,
    get_organization_subscription,
    get_subscription_summary,
    reactivate_subscription,
    renew_subscription,
    suspend_subscription,
)
from apps.core.cache import CachePort, get_cache_port, set_cache_port
from tests.accounts.factories import OrganizationFactory, UserFactory

from .factories import FeatureFactory, PlanFactory, SubscriptionFactory

Status = OrganizationSubscription.Status


def _audit_events(org) -> list[str]:
    return list(
        SubscriptionAuditLog.objects.filter(organization_id=str(org.pk))
        .order_by("id")
        .values_list("event_type", flat=True)
    )


@pytest.mark.django_db
class TestCreateSubscription:
    """New organizations start on a trial of their plan."""

    def test_new_organization_starts_trial(self) -> None:
        """STARTER with 14 trial days: TRIAL, core granted, premium denied."""
        FeatureFactory(code="DASHBOARD", category="CORE", is_core=True)
        FeatureFactory(code="TREASURY", category="PREMIUM", is_premium=True)
        FeatureFactory(code="EVENTS")
        plan = PlanFactory(code="STARTER", trial_days=14, included_features=["EVENTS"])
        org = OrganizationFactory()
        now = timezone.now()

        subscription = create_subscription(org, plan, now=now)

        assert subscription.status == Status.TRIAL
        assert subscription.trial_ends_at == now + timedelta(days=14)
        assert subscription.current_period_end == now + timedelta(days=14)
        assert has_feature_access(org.pk, "DASHBOARD") is True
        assert has_feature_access(org.pk, "TREASURY") is False
        assert has_feature_access(org.pk, "EVENTS") is True

    def test_mirrors_status_and_quotas_on_organization(self) -> None:
        plan = PlanFactory(max_users=250, max_storage_mb=10240)
        org = OrganizationFactory()

        create_subscription(org, plan)

        org.refresh_from_db()
        assert org.subscription_status == Status.TRIAL
        assert org.max_users == 250
        assert org.storage_quota_mb == 10240

    def test_second_subscription_conflicts(self) -> None:
        plan = PlanFactory()
        org = OrganizationFactory()
        create_subscription(org, plan)

        with pytest.raises(ConflictError):
            create_subscription(org, plan)

    def test_writes_audit_entry(self) -> None:
        org = OrganizationFactory()

        create_subscription(org, PlanFactory())

        assert _audit_events(org) == ["SUBSCRIPTION_CREATED"]


@pytest.mark.django_db
class TestActivateSubscription:
    """Activation starts a new paid period sized by the billing cycle."""

    @pytest.mark.parametrize(
        ("billing_cycle", "days"),
        [("MONTHLY", 30), ("QUARTERLY", 90), ("YEARLY", 365)],
    )
    def test_period_length_by_billing_cycle(self, billing_cycle: str, days: int) -> None:
        subscription = SubscriptionFactory(status=Status.TRIAL, billing_cycle=billing_cycle)
        now = timezone.now()

        result = activate_subscription(subscription.organization, now=now)

        assert result.status == Status.ACTIVE
        assert result.current_period_start == now
        assert result.current_period_end == now + timedelta(days=days)
        assert result.next_billing_date == now + timedelta(days=days)

    def test_clears_trial_and_grace_markers(self) -> None:
        now = timezone.now()
        subscription = SubscriptionFactory(
            status=Status.GRACE_PERIOD,
            trial_ends_at=now - timedelta(days=20),
            grace_period_ends_at=now + timedelta(days=2),
        )

        result = activate_subscription(subscription.organization, now=now)

        assert result.trial_ends_at is None
        assert result.grace_period_ends_at is None

    def test_records_payment(self) -> None:
        subscription = SubscriptionFactory(status=Status.TRIAL)
        payment = PaymentConfirmation("txn_123", Decimal("999.00"))

        result = activate_subscription(subscription.organization, payment)

        assert result.last_payment_id == "txn_123"
        assert result.last_payment_amount == Decimal("999.00")
        assert result.last_payment_date is not None

    def test_lifts_maintenance_mode(self) -> None:
        org = OrganizationFactory(is_maintenance_mode=True, maintenance_message="expired")
        SubscriptionFactory(organization=org, status=Status.EXPIRED)

        activate_subscription(org)

        org.refresh_from_db()
        assert org.is_maintenance_mode is False
        assert org.subscription_status == Status.ACTIVE

    def test_suspended_subscription_rejected(self) -> None:
        subscription = SubscriptionFactory(status=Status.SUSPENDED)

        with pytest.raises(InvalidTransitionError):
            activate_subscription(subscription.organization)

    def test_invalidates_cached_subscription(self) -> None:
        subscription = SubscriptionFactory(status=Status.TRIAL)
        org = subscription.organization
        assert get_organization_subscription(org.pk).status == Status.TRIAL

        activate_subscription(org)

        assert get_organization_subscription(org.pk).status == Status.ACTIVE

    def test_renewal_can_switch_billing_cycle(self) -> None:
        subscription = SubscriptionFactory(billing_cycle="MONTHLY")
        now = timezone.now()

        result = renew_subscription(subscription.organization, billing_cycle="YEARLY", now=now)

        assert result.billing_cycle == "YEARLY"
        assert result.current_period_end == now + timedelta(days=365)


@pytest.mark.django_db
class TestChangePlan:
    """Plan changes rebuild entitlements from the new plan."""

    def test_new_plan_feature_available_immediately(self) -> None:
        """A cached denial from the old plan is not served after the change."""
        FeatureFactory(code="ANALYTICS", category="ADMIN")
        old_plan = PlanFactory(code="BASIC", included_features=[])
        pro = PlanFactory(code="PRO", included_features=["ANALYTICS"], price_monthly=Decimal("5000"))
        org = OrganizationFactory()
        create_subscription(org, old_plan)
        assert has_feature_access(org.pk, "ANALYTICS") is False

        change_plan(org, pro)

        assert has_feature_access(org.pk, "ANALYTICS") is True

    def test_features_from_old_plan_removed(self) -> None:
        FeatureFactory(code="POLLS")
        old_plan = PlanFactory(included_features=["POLLS"])
        new_plan = PlanFactory(included_features=[])
        org = OrganizationFactory()
        create_subscription(org, old_plan)
        assert has_feature_access(org.pk, "POLLS") is True

        change_plan(org, new_plan)

        assert has_feature_access(org.pk, "POLLS") is False

    def test_plan_change_survives_cache_failure(self) -> None:
        FeatureFactory(code="ANALYTICS", category="ADMIN")
        pro = PlanFactory(code="PRO", included_features=["ANALYTICS"], price_monthly=Decimal("5000"))
        org = OrganizationFactory()
        create_subscription(org, PlanFactory(code="BASIC", included_features=[]))
        backend = MagicMock()
        for name in ("get", "get_many", "set", "add", "incr", "delete", "clear"):
            getattr(backend, name).side_effect = ConnectionError("cache down")
        set_cache_port(CachePort(backend=backend))

        change_plan(org, pro)

        assert OrganizationSubscription.objects.get(organization=org).plan == pro
        assert has_feature_access(org.pk, "ANALYTICS") is True

    def test_invalidation_repeats_once_caller_commits(self, django_capture_on_commit_callbacks) -> None:
        """An entry cached from pre-commit rows is dropped at commit."""
        FeatureFactory(code="ANALYTICS", category="ADMIN")
        pro = PlanFactory(code="PRO", included_features=["ANALYTICS"], price_monthly=Decimal("5000"))
        org = OrganizationFactory()
        create_subscription(org, PlanFactory(code="BASIC", included_features=[]))

        with django_capture_on_commit_callbacks() as callbacks:
            with transaction.atomic():
                change_plan(org, pro)
                stale = replace(get_feature_status(org.pk, "ANALYTICS"), is_enabled=False)
                get_cache_port().set(f"features:org:{org.pk}:ANALYTICS", stale)
        assert has_feature_access(org.pk, "ANALYTICS") is False

        for callback in callbacks:
            callback()

        assert has_feature_access(org.pk, "ANALYTICS") is True

    def test_resets_custom_limits_and_applies_quotas(self) -> None:
        subscription = SubscriptionFactory(custom_max_users=999, custom_max_storage_mb=99999)
        new_plan = PlanFactory(max_users=300, max_storage_mb=20480)

        result = change_plan(subscription.organization, new_plan)

        assert result.custom_max_users is None
        assert result.custom_max_storage_mb is None
        org = subscription.organization
        org.refresh_from_db()
        assert org.max_users == 300
        assert org.storage_quota_mb == 20480

    def test_audits_upgrade(self) -> None:
        subscription = SubscriptionFactory(plan=PlanFactory(price_monthly=Decimal("1000")))

        change_plan(subscription.organization, PlanFactory(price_monthly=Decimal("3000")))

        assert _audit_events(subscription.organization) == ["SUBSCRIPTION_UPGRADED"]

    def test_audits_downgrade(self) -> None:
        subscription = SubscriptionFactory(plan=PlanFactory(price_monthly=Decimal("3000")))
        new_plan = PlanFactory(price_monthly=Decimal("1000"))

        change_plan(subscription.organization, new_plan)

        entry = SubscriptionAuditLog.objects.get(organization_id=str(subscription.organization_id))
        assert entry.event_type == "SUBSCRIPTION_DOWNGRADED"
        assert entry.new_plan_id == str(new_plan.pk)


@pytest.mark.django_db
class TestCancelSubscription:
    def test_cancel(self) -> None:
        subscription = SubscriptionFactory()
        user = UserFactory()

        result = cancel_subscription(
            subscription.organization, reason="closing", actor=Actor(user=user, role="SUPER_ADMIN")
        )

        assert result.status == Status.CANCELLED
        assert result.auto_renew is False
        assert result.cancel_reason == "closing"
        assert result.cancelled_by == user
        assert result.cancelled_at is not None

    def test_cancel_twice_rejected(self) -> None:
        subscription = SubscriptionFactory(status=Status.CANCELLED)

        with pytest.raises(InvalidTransitionError):
            cancel_subscription(subscription.organization)

    def test_audit_records_actor_and_statuses(self) -> None:
        subscription = SubscriptionFactory()
        user = UserFactory()

        cancel_subscription(subscription.organization, actor=Actor(user=user, role="SUPER_ADMIN"))

        entry = SubscriptionAuditLog.objects.get(organization_id=str(subscription.organization_id))
        assert entry.previous_status == Status.ACTIVE
        assert entry.new_status == Status.CANCELLED
        assert entry.performed_by == str(user.pk)
        assert entry.performed_by_role == "SUPER_ADMIN"


@pytest.mark.django_db
class TestSuspendAndReactivate:
    """Administrative suspension and its reversal."""

    def test_suspend_enters_maintenance_mode(self) -> None:
        subscription = SubscriptionFactory()

        suspend_subscription(subscription.organization, reason="abuse")

        org = subscription.organization
        org.refresh_from_db()
        assert org.subscription_status == Status.SUSPENDED
        assert org.is_maintenance_mode is True
        assert org.maintenance_message == "Your subscription has been suspended. Please contact support."

    def test_suspend_twice_rejected(self) -> None:
        subscription = SubscriptionFactory(status=Status.SUSPENDED)

        with pytest.raises(InvalidTransitionError):
            suspend_subscription(subscription.organization)

    def test_reactivate_within_period_is_active(self) -> None:
        subscription = SubscriptionFactory(status=Status.SUSPENDED)
        org = subscription.organization
        org.is_maintenance_mode = True
        org.save()

        result = reactivate_subscription(org)

        assert result.status == Status.ACTIVE
        org.refresh_from_db()
        assert org.is_maintenance_mode is False

    def test_reactivate_after_period_end_is_expired(self) -> None:
        now = timezone.now()
        subscription = SubscriptionFactory(
            status=Status.SUSPENDED,
            current_period_end=now - timedelta(days=1),
        )

        result = reactivate_subscription(subscription.organization, now=now)

        assert result.status == Status.EXPIRED

    def test_reactivate_requires_suspension(self) -> None:
        subscription = SubscriptionFactory(status=Status.ACTIVE)

        with pytest.raises(InvalidTransitionError):
            reactivate_subscription(subscription.organization)


@pytest.mark.django_db
class TestAuditBestEffort:
    """Audit failures never fail the business operation."""

    def test_transition_survives_audit_failure(self) -> None:
        subscription = SubscriptionFactory()

        with patch(
            "apps.billing.audit.SubscriptionAuditLog.objects.create",
            side_effect=RuntimeError("audit table unavailable"),
        ):
            cancel_subscription(subscription.organization)

        subscription.refresh_from_db()
        assert subscription.status == Status.CANCELLED
        assert SubscriptionAuditLog.objects.count() == 0


@pytest.mark.django_db
class TestSubscriptionSummary:
    def test_summary_for_trial(self) -> None:
        now = timezone.now()
        subscription = SubscriptionFactory(
            status=Status.TRIAL,
            current_period_end=now + timedelta(days=2, hours=1),
        )

        summary = get_subscription_summary(subscription.organization, now=now)

        assert summary["status"] == Status.TRIAL
        assert summary["days_remaining"] == 3
        assert summary["pending_payment_requests"] == 0
        messages = [alert["message"] for alert in summary["alerts"]]
        assert "Trial period: 3 days remaining" in messages
        assert "Trial ending soon. Please upgrade to continue using all features." in messages

    def test_summary_without_subscription(self) -> None:
        summary = get_subscription_summary(OrganizationFactory())

        assert summary["status"] is None
        assert summary["alerts"] == [
            {"type": "error", "message": "No subscription found. Please contact support."}
        ]


class TestGenerateAlerts:
    """Alert rules; no database needed."""

    def _subscription(self, status: str) -> OrganizationSubscription:
        return OrganizationSubscription(status=status)

    def test_active_renewal_reminder(self) -> None:
        alerts = generate_alerts(self._subscription(Status.ACTIVE), 5, None)

        assert alerts == [{"type": "warning", "message": "Subscription renews in 5 days"}]

    def test_active_far_from_renewal_has_no_alert(self) -> None:
        assert generate_alerts(self._subscription(Status.ACTIVE), 20, None) == []

    def test_usage_quota_alerts(self) -> None:
        usage = {"users_quota_percent": 95.0, "storage_quota_percent": 40.0}

        alerts = generate_alerts(self._subscription(Status.ACTIVE), 20, usage)

        assert alerts == [{"type": "warning", "message": "User quota at 95%. Consider upgrading."}]

    def test_expired_alert(self) -> None:
        alerts = generate_alerts(self._subscription(Status.EXPIRED), -3, None)

        assert alerts[0]["type"] == "error"
