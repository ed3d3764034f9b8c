"""
Entitlement store and resolver.

Resolution rules:
- core features are always granted, without reading the entitlement store
- a missing entitlement record denies
- a purchased add-on whose ``add_on_expires_at`` has passed denies, decided
  at read time so no job is needed to switch expired add-ons off

Decisions are cached per organization under ``features:org:{org_id}:*``.
The cached value keeps the add-on expiry next to the flag, so expiry is still
honoured on a cache hit. Cache failures fall through to the database.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from django.db import transaction
from django.utils import timezone

from apps.billing.audit import SYSTEM_ACTOR, Actor, log_audit
from apps.billing.catalog import get_feature_by_code, get_feature_or_404, plan_grants
from apps.billing.constants import AuditEvent, normalize_feature_code
from apps.billing.exceptions import ConflictError
from apps.billing.models import (
    Feature,
    OrganizationFeature,
    PlanFeatureOverride,
    SubscriptionPlan,
)
from apps.core.cache import CACHE_MISS, get_cache_port, invalidate_now_and_on_commit
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)


@dataclass(frozen=True)
class FeatureStatus:
    """Resolved state of one feature for one organization."""

    code: str
    exists: bool
    is_enabled: bool = False
    name: str = ""
    is_core: bool = False
    is_premium: bool = False
    is_add_on: bool = False
    custom_limit: int | None = None
    custom_limit_type: str = ""
    is_purchased_add_on: bool = False
    add_on_expires_at: datetime | None = None

    def at(self, now: datetime) -> "FeatureStatus":
        """This status as seen at ``now`` (expired add-ons read as disabled)."""
        if (
            self.is_enabled
            and self.is_purchased_add_on
            and self.add_on_expires_at is not None
            and self.add_on_expires_at <= now
        ):
            return replace(self, is_enabled=False)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "exists": self.exists,
            "is_enabled": self.is_enabled,
            "is_core": self.is_core,
            "is_premium": self.is_premium,
            "is_add_on": self.is_add_on,
            "custom_limit": self.custom_limit,
            "custom_limit_type": self.custom_limit_type,
            "is_purchased_add_on": self.is_purchased_add_on,
            "add_on_expires_at": self.add_on_expires_at,
        }


def _feature_key(org_id: Any, code: str) -> str:
    return f"features:org:{org_id}:{code}"


def _all_key(org_id: Any) -> str:
    return f"features:org:{org_id}:all"


def invalidate_organization_features(org_id: Any) -> None:
    cache = get_cache_port()
    invalidate_now_and_on_commit(lambda: cache.delete_pattern(f"features:org:{org_id}:*"))


def _status_for(feature: Feature, record: OrganizationFeature | None) -> FeatureStatus:
    """Stored status, before add-on expiry is applied."""
    base = {
        "code": feature.code,
        "exists": True,
        "name": feature.name,
        "is_core": feature.is_core,
        "is_premium": feature.is_premium,
        "is_add_on": feature.is_add_on,
    }
    if feature.is_core:
        return FeatureStatus(is_enabled=True, **base)
    if record is None:
        return FeatureStatus(is_enabled=False, **base)
    return FeatureStatus(
        is_enabled=record.is_enabled,
        custom_limit=record.custom_limit,
        custom_limit_type=record.custom_limit_type,
        is_purchased_add_on=record.is_purchased_add_on,
        add_on_expires_at=record.add_on_expires_at,
        **base,
    )


def get_feature_status(org_id: Any, code: str, now: datetime | None = None) -> FeatureStatus:
    """
    Resolve one feature for an organization.

    Unknown and deactivated non-core features resolve to ``exists=False``.
    """
    now = now or timezone.now()
    code = normalize_feature_code(code)

    feature = get_feature_by_code(code)
    if feature is None or (not feature.is_active and not feature.is_core):
        return FeatureStatus(code=code, exists=False)
    if feature.is_core:
        return _status_for(feature, None)

    cache = get_cache_port()
    key = _feature_key(org_id, code)
    cached = cache.get(key)
    if cached is not CACHE_MISS:
        return cached.at(now)

    record = OrganizationFeature.objects.filter(organization_id=org_id, feature=feature).first()
    status = _status_for(feature, record)
    cache.set(key, status)
    return status.at(now)


def has_feature_access(org_id: Any, code: str, now: datetime | None = None) -> bool:
    status = get_feature_status(org_id, code, now=now)
    return status.exists and status.is_enabled


def get_organization_features(org_id: Any, now: datetime | None = None) -> list[FeatureStatus]:
    """Every active catalog feature resolved for the organization."""
    now = now or timezone.now()
    cache = get_cache_port()
    key = _all_key(org_id)
    cached = cache.get(key)
    if cached is CACHE_MISS:
        records = {
            record.feature_id: record
            for record in OrganizationFeature.objects.filter(organization_id=org_id)
        }
        cached = [
            _status_for(feature, records.get(feature.pk))
            for feature in Feature.objects.filter(is_active=True)
        ]
        cache.set(key, cached)
    return [status.at(now) for status in cached]


def get_enabled_feature_codes(org_id: Any, now: datetime | None = None) -> list[str]:
    return [status.code for status in get_organization_features(org_id, now=now) if status.is_enabled]


# --- Management -----------------------------------------------------------


def _upsert(org: Organization, feature: Feature, actor: Actor, **fields: Any) -> OrganizationFeature:
    record, _ = OrganizationFeature.objects.update_or_create(
        organization=org,
        feature=feature,
        defaults={"last_modified_by": actor.user, **fields},
    )
    invalidate_organization_features(org.pk)
    return record


def enable_feature(
    org: Organization,
    code: str,
    actor: Actor = SYSTEM_ACTOR,
    *,
    is_purchased_add_on: bool = False,
    add_on_expires_at: datetime | None = None,
    add_on_payment_id: str = "",
    custom_limit: int | None = None,
    custom_limit_type: str | None = None,
) -> OrganizationFeature:
    feature = get_feature_or_404(code)
    fields: dict[str, Any] = {
        "is_enabled": True,
        "enabled_at": timezone.now(),
        "disabled_at": None,
        "disable_reason": "",
    }
    # A manual grant replaces any earlier purchase and its expiry.
    fields.update(
        is_purchased_add_on=is_purchased_add_on,
        add_on_expires_at=add_on_expires_at if is_purchased_add_on else None,
        add_on_payment_id=add_on_payment_id if is_purchased_add_on else "",
    )
    if custom_limit is not None:
        fields["custom_limit"] = custom_limit
    if custom_limit_type is not None:
        fields["custom_limit_type"] = custom_limit_type

    record = _upsert(org, feature, actor, **fields)

    log_audit(
        org.pk,
        AuditEvent.FEATURE_ENABLED,
        details={"feature": feature.code, "is_purchased_add_on": is_purchased_add_on},
        actor=actor,
    )
    logger.info("feature_enabled", organization_id=str(org.pk), feature=feature.code)
    return record


def disable_feature(
    org: Organization,
    code: str,
    actor: Actor = SYSTEM_ACTOR,
    reason: str = "",
) -> OrganizationFeature:
    """
    Raises:
        ConflictError: The feature is core and cannot be disabled.
    """
    feature = get_feature_or_404(code)
    if feature.is_core:
        raise ConflictError("Core features cannot be disabled", feature=feature.code)

    record = _upsert(
        org,
        feature,
        actor,
        is_enabled=False,
        disabled_at=timezone.now(),
        disable_reason=reason,
    )

    log_audit(
        org.pk,
        AuditEvent.FEATURE_DISABLED,
        details={"feature": feature.code, "reason": reason},
        actor=actor,
    )
    logger.info("feature_disabled", organization_id=str(org.pk), feature=feature.code)
    return record


def toggle_feature(
    org: Organization,
    code: str,
    enabled: bool,
    actor: Actor = SYSTEM_ACTOR,
    reason: str = "",
) -> OrganizationFeature:
    if enabled:
        return enable_feature(org, code, actor)
    return disable_feature(org, code, actor, reason=reason)


def set_feature_limit(
    org: Organization,
    code: str,
    limit: int | None,
    limit_type: str = "",
    actor: Actor = SYSTEM_ACTOR,
) -> OrganizationFeature:
    feature = get_feature_or_404(code)
    record = _upsert(org, feature, actor, custom_limit=limit, custom_limit_type=limit_type or "")

    log_audit(
        org.pk,
        AuditEvent.FEATURE_LIMIT_SET,
        details={"feature": feature.code, "limit": limit, "limit_type": limit_type},
        actor=actor,
    )
    logger.info("feature_limit_set", organization_id=str(org.pk), feature=feature.code, limit=limit)
    return record


def purchase_add_on(
    org: Organization,
    code: str,
    expires_at: datetime,
    payment_id: str = "",
    actor: Actor = SYSTEM_ACTOR,
) -> OrganizationFeature:
    """
    Grant an add-on until ``expires_at``.

    Raises:
        ConflictError: The feature is not sold as an add-on.
    """
    feature = get_feature_or_404(code)
    if not feature.is_add_on:
        raise ConflictError("Feature is not an add-on", feature=feature.code)

    record = enable_feature(
        org,
        feature.code,
        actor,
        is_purchased_add_on=True,
        add_on_expires_at=expires_at,
        add_on_payment_id=payment_id,
    )
    log_audit(
        org.pk,
        AuditEvent.ADD_ON_PURCHASED,
        details={
            "feature": feature.code,
            "expires_at": expires_at.isoformat(),
            "payment_id": payment_id,
        },
        actor=actor,
    )
    return record


def initialize_organization_features(org: Organization, plan: SubscriptionPlan) -> list[OrganizationFeature]:
    """
    Rebuild the organization's entitlements from ``plan``.

    Replaces every record: one per active catalog feature, enabled when the
    feature is core, included in the plan, or enabled by a plan override.
    Override limits are carried over. Running it twice with the same plan
    yields the same set.
    """
    overrides = {row.feature_id: row for row in PlanFeatureOverride.objects.filter(plan=plan)}
    now = timezone.now()

    rows = []
    for feature in Feature.objects.filter(is_active=True):
        override = overrides.get(feature.pk)
        enabled = plan_grants(plan, feature, override)
        rows.append(
            OrganizationFeature(
                organization=org,
                feature=feature,
                is_enabled=enabled,
                enabled_at=now if enabled else None,
                custom_limit=override.limit if override else None,
                custom_limit_type=override.limit_type if override else "",
            )
        )

    with transaction.atomic():
        OrganizationFeature.objects.filter(organization=org).delete()
        created = OrganizationFeature.objects.bulk_create(rows)

    invalidate_organization_features(org.pk)
    logger.info(
        "organization_features_initialized",
        organization_id=str(org.pk),
        plan_code=plan.code,
        enabled=sum(1 for row in rows if row.is_enabled),
    )
    return created
