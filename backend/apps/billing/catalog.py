"""
Feature and plan catalog.

Catalog reads are cached for CATALOG_CACHE_TTL. Any catalog write drops the
whole namespace it belongs to: the feature matrix is a cross-cut of every
plan and feature, so single-key invalidation would leave it stale.
"""

from typing import Any

from django.db import transaction

from apps.billing.audit import SYSTEM_ACTOR, Actor, log_audit
from apps.billing.constants import (
    DEFAULT_FEATURES,
    AuditEvent,
    FeatureCategory,
    normalize_feature_code,
    parse_feature_code,
)
from apps.billing.exceptions import ConflictError, NotFoundError
from apps.billing.models import Feature, PlanFeatureOverride, SubscriptionPlan
from apps.core.cache import CACHE_MISS, get_cache_port, invalidate_now_and_on_commit
from apps.core.logging import get_logger

logger = get_logger(__name__)

FEATURE_FIELDS = frozenset(
    {
        "name",
        "description",
        "category",
        "is_core",
        "is_premium",
        "is_add_on",
        "add_on_price_monthly",
        "add_on_price_yearly",
        "is_beta",
        "is_active",
    }
)

PLAN_FIELDS = frozenset(
    {
        "name",
        "description",
        "price_monthly",
        "price_yearly",
        "currency",
        "max_users",
        "max_storage_mb",
        "max_events_per_month",
        "max_posts_per_month",
        "max_emails_per_month",
        "max_push_per_month",
        "trial_days",
        "grace_period_days",
        "support_level",
        "included_features",
        "is_popular",
        "sort_order",
        "is_active",
    }
)


def _check_fields(fields: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")


def _validate_category(fields: dict[str, Any]) -> None:
    if "category" in fields:
        try:
            fields["category"] = FeatureCategory(str(fields["category"]).upper()).value
        except ValueError:
            raise ValueError(f"Unknown feature category: {fields['category']}") from None


def _validate_included_features(fields: dict[str, Any]) -> None:
    if "included_features" in fields:
        codes = [parse_feature_code(code).value for code in fields["included_features"] or []]
        fields["included_features"] = sorted(set(codes))


def invalidate_feature_catalog() -> None:
    """Drop cached catalog and per-organization feature entries, and plans."""
    cache = get_cache_port()

    def invalidate() -> None:
        cache.delete_pattern("features:*")
        cache.delete_pattern("subscription:plans:*")

    invalidate_now_and_on_commit(invalidate)


def invalidate_plan_catalog() -> None:
    cache = get_cache_port()
    invalidate_now_and_on_commit(lambda: cache.delete_pattern("subscription:plans:*"))


# --- Features -------------------------------------------------------------


def list_features(include_inactive: bool = False) -> list[Feature]:
    cache = get_cache_port()
    key = f"features:all:{str(include_inactive).lower()}"
    cached = cache.get(key)
    if cached is not CACHE_MISS:
        return cached

    queryset = Feature.objects.all()
    if not include_inactive:
        queryset = queryset.filter(is_active=True)
    features = list(queryset)
    cache.set(key, features)
    return features


def get_feature_by_code(code: str) -> Feature | None:
    """Active or inactive feature by code, None if unknown."""
    code = normalize_feature_code(code)
    cache = get_cache_port()
    key = f"features:code:{code}"
    cached = cache.get(key)
    if cached is not CACHE_MISS:
        return cached

    feature = Feature.objects.filter(code=code).first()
    if feature is not None:
        cache.set(key, feature)
    return feature


def get_feature_or_404(code: str) -> Feature:
    feature = get_feature_by_code(code)
    if feature is None:
        raise NotFoundError("Feature not found", feature=normalize_feature_code(code))
    return feature


def create_feature(code: str, name: str, actor: Actor = SYSTEM_ACTOR, **fields: Any) -> Feature:
    """
    Add a feature to the catalog.

    Raises:
        ValueError: Unknown code, category or field.
        ConflictError: A feature with this code already exists.
    """
    _check_fields(fields, FEATURE_FIELDS)
    _validate_category(fields)
    feature_code = parse_feature_code(code).value

    if Feature.objects.filter(code=feature_code).exists():
        raise ConflictError("Feature already exists", feature=feature_code)

    feature = Feature.objects.create(code=feature_code, name=name, **fields)
    invalidate_feature_catalog()

    log_audit(
        None,
        AuditEvent.FEATURE_CREATED,
        details={"code": feature.code, "name": feature.name},
        actor=actor,
    )
    logger.info("feature_created", code=feature.code)
    return feature


def update_feature(code: str, actor: Actor = SYSTEM_ACTOR, **fields: Any) -> Feature:
    _check_fields(fields, FEATURE_FIELDS)
    _validate_category(fields)
    feature = Feature.objects.filter(code=normalize_feature_code(code)).first()
    if feature is None:
        raise NotFoundError("Feature not found", feature=normalize_feature_code(code))

    for name, value in fields.items():
        setattr(feature, name, value)
    feature.save()
    invalidate_feature_catalog()

    log_audit(
        None,
        AuditEvent.FEATURE_UPDATED,
        details={"code": feature.code, "changes": sorted(fields)},
        actor=actor,
    )
    logger.info("feature_updated", code=feature.code, fields=sorted(fields))
    return feature


def deactivate_feature(code: str, actor: Actor = SYSTEM_ACTOR) -> Feature:
    """Features are never deleted; they drop out of the active catalog."""
    return update_feature(code, actor=actor, is_active=False)


def seed_default_features() -> int:
    """
    Create any missing default features. Existing rows are left untouched.

    Returns the number of features created.
    """
    created = 0
    for definition in DEFAULT_FEATURES:
        defaults = {key: value for key, value in definition.items() if key != "code"}
        defaults["category"] = str(defaults["category"])
        _, was_created = Feature.objects.get_or_create(code=str(definition["code"]), defaults=defaults)
        if was_created:
            created += 1

    if created:
        invalidate_feature_catalog()
    logger.info("default_features_seeded", created=created, total=len(DEFAULT_FEATURES))
    return created


# --- Plans ----------------------------------------------------------------


def list_plans(include_inactive: bool = False) -> list[SubscriptionPlan]:
    cache = get_cache_port()
    key = f"subscription:plans:{str(include_inactive).lower()}"
    cached = cache.get(key)
    if cached is not CACHE_MISS:
        return cached

    queryset = SubscriptionPlan.objects.all()
    if not include_inactive:
        queryset = queryset.filter(is_active=True)
    plans = list(queryset)
    cache.set(key, plans)
    return plans


def get_plan(id_or_code: Any) -> SubscriptionPlan:
    """
    Plan by primary key or code.

    Raises:
        NotFoundError: No such plan.
    """
    plan = None
    if isinstance(id_or_code, int) or str(id_or_code).isdigit():
        plan = SubscriptionPlan.objects.filter(pk=int(id_or_code)).first()
    if plan is None:
        plan = SubscriptionPlan.objects.filter(code=str(id_or_code).upper()).first()
    if plan is None:
        raise NotFoundError("Plan not found", plan=str(id_or_code))
    return plan


def create_plan(code: str, name: str, actor: Actor = SYSTEM_ACTOR, **fields: Any) -> SubscriptionPlan:
    _check_fields(fields, PLAN_FIELDS)
    _validate_included_features(fields)
    plan_code = code.strip().upper()
    if not plan_code:
        raise ValueError("Plan code is required")
    if SubscriptionPlan.objects.filter(code=plan_code).exists():
        raise ConflictError("Plan already exists", plan=plan_code)

    plan = SubscriptionPlan.objects.create(code=plan_code, name=name, **fields)
    invalidate_plan_catalog()

    log_audit(
        None,
        AuditEvent.PLAN_CREATED,
        details={"code": plan.code, "name": plan.name},
        new_plan_id=plan.pk,
        actor=actor,
    )
    logger.info("plan_created", plan_code=plan.code)
    return plan


def update_plan(id_or_code: Any, actor: Actor = SYSTEM_ACTOR, **fields: Any) -> SubscriptionPlan:
    """
    Update plan attributes.

    Existing organization entitlements are not rewritten; they are re-derived
    the next time a plan is assigned.
    """
    _check_fields(fields, PLAN_FIELDS)
    _validate_included_features(fields)
    plan = get_plan(id_or_code)
    for name, value in fields.items():
        setattr(plan, name, value)
    plan.save()
    invalidate_plan_catalog()

    log_audit(
        None,
        AuditEvent.PLAN_UPDATED,
        details={"code": plan.code, "changes": sorted(fields)},
        new_plan_id=plan.pk,
        actor=actor,
    )
    logger.info("plan_updated", plan_code=plan.code, fields=sorted(fields))
    return plan


def deactivate_plan(id_or_code: Any, actor: Actor = SYSTEM_ACTOR) -> SubscriptionPlan:
    return update_plan(id_or_code, actor=actor, is_active=False)


def set_plan_features(
    id_or_code: Any,
    overrides: list[dict[str, Any]],
    actor: Actor = SYSTEM_ACTOR,
) -> list[PlanFeatureOverride]:
    """
    Replace a plan's feature overrides.

    Each override is ``{"feature_code", "is_enabled", "limit", "limit_type"}``.
    Prior overrides are deleted first, never merged.

    Raises:
        NotFoundError: Plan or one of the features does not exist.
    """
    plan = get_plan(id_or_code)

    rows = []
    for override in overrides:
        code = normalize_feature_code(override["feature_code"])
        feature = Feature.objects.filter(code=code).first()
        if feature is None:
            raise NotFoundError("Feature not found", feature=code)
        rows.append(
            PlanFeatureOverride(
                plan=plan,
                feature=feature,
                is_enabled=override.get("is_enabled", True),
                limit=override.get("limit"),
                limit_type=override.get("limit_type") or "",
            )
        )

    with transaction.atomic():
        PlanFeatureOverride.objects.filter(plan=plan).delete()
        created = PlanFeatureOverride.objects.bulk_create(rows)

    invalidate_plan_catalog()
    log_audit(
        None,
        AuditEvent.PLAN_FEATURES_SET,
        details={"code": plan.code, "features": [row.feature.code for row in rows]},
        new_plan_id=plan.pk,
        actor=actor,
    )
    logger.info("plan_features_set", plan_code=plan.code, count=len(rows))
    return created


def plan_grants(plan: SubscriptionPlan, feature: Feature, override: PlanFeatureOverride | None) -> bool:
    """Whether membership in ``plan`` alone enables ``feature``."""
    if feature.is_core or plan.includes(feature.code):
        return True
    return override is not None and override.is_enabled


def get_feature_matrix() -> dict[str, Any]:
    """Active plans x active features, for plan comparison."""
    plans = list_plans()
    features = list_features()
    overrides = {
        (row.plan_id, row.feature_id): row
        for row in PlanFeatureOverride.objects.filter(plan__in=[plan.pk for plan in plans])
    }

    matrix = []
    for feature in features:
        cells = {}
        for plan in plans:
            override = overrides.get((plan.pk, feature.pk))
            cells[plan.code] = {
                "included": plan_grants(plan, feature, override),
                "limit": override.limit if override else None,
                "limit_type": override.limit_type if override else "",
            }
        matrix.append(
            {
                "code": feature.code,
                "name": feature.name,
                "category": feature.category,
                "is_core": feature.is_core,
                "is_premium": feature.is_premium,
                "is_add_on": feature.is_add_on,
                "plans": cells,
            }
        )

    return {"plans": [plan.code for plan in plans], "features": matrix}
