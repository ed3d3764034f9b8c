"""
Entitlement gates for API endpoints.

Usage:
    @router.post("/events", auth=member_auth)
    @check_maintenance_mode
    @require_active_subscription
    @require_feature(FeatureCode.EVENTS)
    @check_feature_limit(FeatureCode.EVENTS, events_this_month)
    def create_event(request, payload): ...

Failures raise BillingError subclasses; the API exception handler renders
them as ``{"detail": ..., **context}`` with the matching status code.
Platform developers pass every gate.
"""

from collections.abc import Callable
from functools import wraps
from typing import Any

from django.conf import settings
from django.http import HttpRequest
from django.utils import timezone

from apps.billing.constants import (
    ALLOWED_SUBSCRIPTION_STATUSES,
    DEFAULT_MAINTENANCE_MESSAGE,
    INACTIVE_SUBSCRIPTION_MESSAGES,
    normalize_feature_code,
)
from apps.billing.entitlements import get_enabled_feature_codes, get_feature_status
from apps.billing.exceptions import (
    FeatureAccessDenied,
    MaintenanceModeError,
    NotFoundError,
    OrganizationContextRequired,
    PaymentRequiredError,
    UsageLimitExceeded,
)
from apps.billing.models import OrganizationSubscription
from apps.billing.services import days_until, get_organization_subscription
from apps.core.logging import get_logger
from apps.core.security import get_auth_context

logger = get_logger(__name__)

TRIAL_WARNING_HEADER = "X-Trial-Warning"


def require_feature(code: str, optional: bool = False) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Allow the endpoint only if the organization has ``code`` enabled.

    With ``optional``, requests without organization context pass through.
    """
    code = normalize_feature_code(code)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
            ctx = get_auth_context(request)
            if ctx.is_developer:
                return func(request, *args, **kwargs)

            org = ctx.organization
            if org is None:
                if optional:
                    return func(request, *args, **kwargs)
                raise OrganizationContextRequired("Organization context required")

            status = get_feature_status(org.pk, code)
            if not status.exists:
                raise NotFoundError(f"Feature {code} not found", feature=code)

            if not status.is_enabled:
                logger.info("feature_access_denied", organization_id=str(org.pk), feature=code)
                if status.is_premium or status.is_add_on:
                    raise FeatureAccessDenied(
                        "This feature requires a higher subscription plan",
                        feature=code,
                        featureName=status.name,
                        isPremium=status.is_premium,
                        isAddOn=status.is_add_on,
                        upgradeRequired=True,
                    )
                raise FeatureAccessDenied(
                    f"Feature {status.name} is not enabled for your organization",
                    feature=code,
                    featureName=status.name,
                    isDisabled=True,
                )

            request.feature_access = {"code": code, "hasAccess": True}  # type: ignore[attr-defined]
            return func(request, *args, **kwargs)

        return wrapper

    return decorator


def check_feature_limit(
    code: str,
    usage_getter: Callable[[HttpRequest], int],
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Reject with 429 once ``usage_getter(request)`` reaches the feature's limit.

    Features without a custom limit are unlimited.
    """
    code = normalize_feature_code(code)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
            ctx = get_auth_context(request)
            if ctx.is_developer or ctx.organization is None:
                return func(request, *args, **kwargs)

            status = get_feature_status(ctx.organization.pk, code)
            if not status.is_enabled:
                raise FeatureAccessDenied(f"Feature {code} is not enabled", feature=code)

            if status.custom_limit is None:
                return func(request, *args, **kwargs)

            current_usage = usage_getter(request)
            if current_usage >= status.custom_limit:
                logger.info(
                    "feature_limit_reached",
                    organization_id=str(ctx.organization.pk),
                    feature=code,
                    limit=status.custom_limit,
                    current_usage=current_usage,
                )
                raise UsageLimitExceeded(
                    f"You have reached the limit for {status.name}",
                    feature=code,
                    limit=status.custom_limit,
                    limitType=status.custom_limit_type,
                    currentUsage=current_usage,
                    upgradeRequired=True,
                )

            request.feature_limit = {  # type: ignore[attr-defined]
                "code": code,
                "limit": status.custom_limit,
                "currentUsage": current_usage,
                "remaining": status.custom_limit - current_usage,
            }
            return func(request, *args, **kwargs)

        return wrapper

    return decorator


def check_maintenance_mode(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    503 while the organization is in maintenance mode.

    Super admins and developers pass so they can renew or reactivate.
    """

    @wraps(func)
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
        ctx = get_auth_context(request)
        org = ctx.organization
        if org is None or not org.is_maintenance_mode:
            return func(request, *args, **kwargs)
        if ctx.is_developer or (ctx.member is not None and ctx.member.is_super_admin):
            return func(request, *args, **kwargs)

        raise MaintenanceModeError(
            org.maintenance_message or DEFAULT_MAINTENANCE_MESSAGE,
            code="MAINTENANCE_MODE",
        )

    return wrapper


def _subscription_status(org: Any) -> str:
    subscription = get_organization_subscription(org.pk)
    if subscription is not None:
        return subscription.status
    return org.subscription_status or ""


def require_active_subscription(func: Callable[..., Any]) -> Callable[..., Any]:
    """402 unless the subscription is TRIAL, ACTIVE or GRACE_PERIOD."""

    @wraps(func)
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
        ctx = get_auth_context(request)
        if ctx.is_developer:
            return func(request, *args, **kwargs)

        org = ctx.organization
        if org is None:
            raise OrganizationContextRequired("Organization context required")

        status = _subscription_status(org)
        if status not in ALLOWED_SUBSCRIPTION_STATUSES:
            raise PaymentRequiredError(
                INACTIVE_SUBSCRIPTION_MESSAGES.get(status, "Subscription inactive"),
                subscriptionStatus=status or None,
                renewalRequired=True,
            )
        return func(request, *args, **kwargs)

    return wrapper


def check_trial_status(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Attach ``request.trial_status`` for organizations on trial.

    Sets a trial warning (sent as X-Trial-Warning by TrialWarningMiddleware)
    when 1 to TRIAL_WARNING_DAYS days remain. Never blocks the request.
    """

    @wraps(func)
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
        org = get_auth_context(request).organization
        try:
            subscription = get_organization_subscription(org.pk) if org is not None else None
        except Exception:
            logger.warning("trial_status_check_failed", exc_info=True)
            subscription = None

        if subscription is not None and subscription.status == OrganizationSubscription.Status.TRIAL:
            ends_at = subscription.trial_ends_at or subscription.current_period_end
            days = days_until(ends_at, timezone.now())
            trial_status: dict[str, Any] = {
                "isTrial": True,
                "subscriptionEndsAt": ends_at,
                "daysRemaining": max(0, days) if days is not None else None,
            }
            if days is not None and 0 < days <= settings.TRIAL_WARNING_DAYS:
                trial_status["warning"] = f"Trial expires in {days} day(s)"
            request.trial_status = trial_status  # type: ignore[attr-defined]

        return func(request, *args, **kwargs)

    return wrapper


def attach_feature_access(func: Callable[..., Any]) -> Callable[..., Any]:
    """Attach ``request.enabled_features`` (set of codes). Never blocks the request."""

    @wraps(func)
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
        org = get_auth_context(request).organization
        if org is not None:
            try:
                request.enabled_features = set(get_enabled_feature_codes(org.pk))  # type: ignore[attr-defined]
            except Exception:
                logger.warning("feature_access_attach_failed", organization_id=str(org.pk), exc_info=True)
        return func(request, *args, **kwargs)

    return wrapper
