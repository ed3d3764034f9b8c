"""
Billing API endpoints.

Catalog management and platform operations are restricted to developers.
Organization endpoints act on the caller's organization and require a super
admin (or a developer selecting the organization with X-Organization).
BillingError subclasses raised below are rendered by the handler in
config/api.py.
"""

from django.http import HttpRequest
from django.utils import timezone
from ninja import Router
from ninja.errors import HttpError

from apps.billing import catalog, entitlements, payment_requests, services, usage
from apps.billing.audit import Actor, list_audit_logs
from apps.billing.exceptions import NotFoundError
from apps.billing.models import OrganizationFeature, OrganizationSubscription, SubscriptionPaymentRequest
from apps.billing.schemas import (
    AuditLogResponse,
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    FeatureCreateRequest,
    FeatureLimitRequest,
    FeatureMatrixResponse,
    FeatureResponse,
    FeatureStatusResponse,
    FeatureUpdateRequest,
    OrganizationFeatureResponse,
    PaymentRequestCreateRequest,
    PaymentRequestDecisionRequest,
    PaymentRequestPayRequest,
    PaymentRequestResponse,
    PlanCreateRequest,
    PlanFeatureOverrideResponse,
    PlanResponse,
    PlanUpdateRequest,
    RenewSubscriptionRequest,
    SeedFeaturesResponse,
    SetPlanFeaturesRequest,
    SubscriptionResponse,
    SubscriptionSummaryResponse,
    SuspendSubscriptionRequest,
    ToggleFeatureRequest,
    UsageResponse,
)
from apps.core.logging import get_logger
from apps.core.schemas import EntitlementErrorResponse, ErrorResponse
from apps.core.security import get_auth_context, member_auth, require_developer, require_super_admin
from apps.organizations.models import Organization

logger = get_logger(__name__)

router = Router(tags=["billing"], auth=member_auth)

ERRORS = {400: ErrorResponse, 401: ErrorResponse, 403: ErrorResponse, 404: ErrorResponse}
TRANSITION_ERRORS = {**ERRORS, 409: EntitlementErrorResponse}


def _actor(request: HttpRequest) -> Actor:
    return Actor.from_auth(get_auth_context(request))


def _organization(request: HttpRequest) -> Organization:
    return get_auth_context(request).require_organization()


def _organization_by_id(org_id: int) -> Organization:
    org = Organization.objects.filter(pk=org_id).first()
    if org is None:
        raise NotFoundError("Organization not found", organizationId=str(org_id))
    return org


def _subscription_out(subscription: OrganizationSubscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        organization_id=str(subscription.organization_id),
        plan_code=subscription.plan.code,
        plan_name=subscription.plan.name,
        status=subscription.status,
        billing_cycle=subscription.billing_cycle,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        trial_ends_at=subscription.trial_ends_at,
        grace_period_ends_at=subscription.grace_period_ends_at,
        auto_renew=subscription.auto_renew,
        custom_max_users=subscription.custom_max_users,
        custom_max_storage_mb=subscription.custom_max_storage_mb,
        last_payment_id=subscription.last_payment_id,
        last_payment_amount=subscription.last_payment_amount,
        last_payment_date=subscription.last_payment_date,
        next_billing_date=subscription.next_billing_date,
        cancelled_at=subscription.cancelled_at,
        cancel_reason=subscription.cancel_reason,
    )


def _org_feature_out(record: OrganizationFeature) -> OrganizationFeatureResponse:
    return OrganizationFeatureResponse(
        feature_code=record.feature.code,
        is_enabled=record.is_enabled,
        custom_limit=record.custom_limit,
        custom_limit_type=record.custom_limit_type,
        is_purchased_add_on=record.is_purchased_add_on,
        add_on_expires_at=record.add_on_expires_at,
    )


def _payment_request_out(request: SubscriptionPaymentRequest) -> PaymentRequestResponse:
    return PaymentRequestResponse(
        id=request.pk,
        organization_id=str(request.subscription.organization_id),
        request_type=request.request_type,
        requested_plan=request.requested_plan.code if request.requested_plan else None,
        requested_add_ons=request.requested_add_ons,
        amount=request.amount,
        currency=request.currency,
        billing_cycle=request.billing_cycle,
        status=request.effective_status(timezone.now()),
        request_note=request.request_note,
        response_note=request.response_note,
        payment_transaction_id=request.payment_transaction_id,
        paid_amount=request.paid_amount,
        paid_at=request.paid_at,
        invoice_url=request.invoice_url,
        expires_at=request.expires_at,
        created_at=request.created_at,
    )


# --- Feature catalog ------------------------------------------------------


@router.get(
    "/features",
    response={200: list[FeatureResponse], 401: ErrorResponse},
    operation_id="listFeatures",
    summary="List catalog features",
)
def list_features(request: HttpRequest, include_inactive: bool = False) -> list[FeatureResponse]:
    return [FeatureResponse.model_validate(feature) for feature in catalog.list_features(include_inactive)]


@router.post(
    "/features",
    response={201: FeatureResponse, **ERRORS, 409: ErrorResponse},
    operation_id="createFeature",
    summary="Create catalog feature",
)
@require_developer
def create_feature(request: HttpRequest, payload: FeatureCreateRequest) -> tuple[int, FeatureResponse]:
    data = payload.model_dump()
    code = data.pop("code")
    name = data.pop("name")
    try:
        feature = catalog.create_feature(code, name, actor=_actor(request), **data)
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return 201, FeatureResponse.model_validate(feature)


@router.post(
    "/features/seed",
    response={200: SeedFeaturesResponse, 401: ErrorResponse, 403: ErrorResponse},
    operation_id="seedFeatures",
    summary="Seed default feature catalog",
)
@require_developer
def seed_features(request: HttpRequest) -> SeedFeaturesResponse:
    """Idempotent; creates only the missing default features."""
    return SeedFeaturesResponse(created=catalog.seed_default_features())


@router.patch(
    "/features/{code}",
    response={200: FeatureResponse, **ERRORS},
    operation_id="updateFeature",
    summary="Update catalog feature",
)
@require_developer
def update_feature(request: HttpRequest, code: str, payload: FeatureUpdateRequest) -> FeatureResponse:
    try:
        feature = catalog.update_feature(code, actor=_actor(request), **payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return FeatureResponse.model_validate(feature)


# --- Plan catalog ---------------------------------------------------------


@router.get(
    "/plans",
    response={200: list[PlanResponse], 401: ErrorResponse},
    operation_id="listPlans",
    summary="List subscription plans",
)
def list_plans(request: HttpRequest, include_inactive: bool = False) -> list[PlanResponse]:
    return [PlanResponse.model_validate(plan) for plan in catalog.list_plans(include_inactive)]


@router.get(
    "/plans/matrix",
    response={200: FeatureMatrixResponse, 401: ErrorResponse},
    operation_id="getFeatureMatrix",
    summary="Plans x features comparison matrix",
)
def feature_matrix(request: HttpRequest) -> FeatureMatrixResponse:
    return FeatureMatrixResponse(**catalog.get_feature_matrix())


@router.post(
    "/plans",
    response={201: PlanResponse, **ERRORS, 409: ErrorResponse},
    operation_id="createPlan",
    summary="Create subscription plan",
)
@require_developer
def create_plan(request: HttpRequest, payload: PlanCreateRequest) -> tuple[int, PlanResponse]:
    data = payload.model_dump()
    code = data.pop("code")
    name = data.pop("name")
    try:
        plan = catalog.create_plan(code, name, actor=_actor(request), **data)
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return 201, PlanResponse.model_validate(plan)


@router.patch(
    "/plans/{plan_id}",
    response={200: PlanResponse, **ERRORS},
    operation_id="updatePlan",
    summary="Update subscription plan",
)
@require_developer
def update_plan(request: HttpRequest, plan_id: str, payload: PlanUpdateRequest) -> PlanResponse:
    try:
        plan = catalog.update_plan(plan_id, actor=_actor(request), **payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return PlanResponse.model_validate(plan)


@router.put(
    "/plans/{plan_id}/features",
    response={200: list[PlanFeatureOverrideResponse], **ERRORS},
    operation_id="setPlanFeatures",
    summary="Replace plan feature overrides",
)
@require_developer
def set_plan_features(
    request: HttpRequest, plan_id: str, payload: SetPlanFeaturesRequest
) -> list[PlanFeatureOverrideResponse]:
    """Full replace: overrides not in the payload are removed."""
    try:
        rows = catalog.set_plan_features(
            plan_id,
            [item.model_dump() for item in payload.features],
            actor=_actor(request),
        )
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return [
        PlanFeatureOverrideResponse(
            feature_code=row.feature.code,
            is_enabled=row.is_enabled,
            limit=row.limit,
            limit_type=row.limit_type,
        )
        for row in rows
    ]


# --- Organization subscription --------------------------------------------


@router.get(
    "/subscription",
    response={200: SubscriptionResponse, **ERRORS},
    operation_id="getSubscription",
    summary="Get organization subscription",
)
@require_super_admin
def get_subscription(request: HttpRequest) -> SubscriptionResponse:
    org = _organization(request)
    return _subscription_out(services.get_subscription_or_404(org.pk))


@router.get(
    "/subscription/summary",
    response={200: SubscriptionSummaryResponse, **ERRORS},
    operation_id="getSubscriptionSummary",
    summary="Subscription status, usage and alerts",
)
@require_super_admin
def get_subscription_summary(request: HttpRequest) -> SubscriptionSummaryResponse:
    return SubscriptionSummaryResponse(**services.get_subscription_summary(_organization(request)))


@router.get(
    "/subscription/features",
    response={200: list[FeatureStatusResponse], 400: ErrorResponse, 401: ErrorResponse},
    operation_id="getOrganizationFeatures",
    summary="Resolved features of the organization",
)
def get_organization_features(request: HttpRequest) -> list[FeatureStatusResponse]:
    """Available to every member; lists what the organization can use."""
    org = _organization(request)
    return [FeatureStatusResponse(**status.to_dict()) for status in entitlements.get_organization_features(org.pk)]


@router.post(
    "/subscription/renew",
    response={200: SubscriptionResponse, **TRANSITION_ERRORS},
    operation_id="renewSubscription",
    summary="Renew subscription with a confirmed payment",
)
@require_super_admin
def renew_subscription(request: HttpRequest, payload: RenewSubscriptionRequest) -> SubscriptionResponse:
    org = _organization(request)
    payment = services.PaymentConfirmation(payload.transaction_id, payload.amount, payload.invoice_url)
    try:
        subscription = services.renew_subscription(
            org, payment, actor=_actor(request), billing_cycle=payload.billing_cycle
        )
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return _subscription_out(subscription)


@router.post(
    "/subscription/cancel",
    response={200: SubscriptionResponse, **TRANSITION_ERRORS},
    operation_id="cancelSubscription",
    summary="Cancel subscription",
)
@require_super_admin
def cancel_subscription(request: HttpRequest, payload: CancelSubscriptionRequest) -> SubscriptionResponse:
    org = _organization(request)
    subscription = services.cancel_subscription(org, reason=payload.reason, actor=_actor(request))
    return _subscription_out(subscription)


@router.get(
    "/usage",
    response={200: UsageResponse, **ERRORS},
    operation_id="getUsage",
    summary="Usage for the current period",
)
@require_super_admin
def get_usage(request: HttpRequest, period_type: str = "monthly") -> UsageResponse:
    try:
        data = usage.get_usage(_organization(request), period_type.lower())
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return UsageResponse(**data)


@router.get(
    "/audit-logs",
    response={200: list[AuditLogResponse], **ERRORS},
    operation_id="listAuditLogs",
    summary="Billing audit trail of the organization",
)
@require_super_admin
def get_audit_logs(request: HttpRequest, event_type: str | None = None, limit: int = 100) -> list[AuditLogResponse]:
    org = _organization(request)
    return [AuditLogResponse.model_validate(entry) for entry in list_audit_logs(org.pk, event_type, min(limit, 500))]


# --- Platform operations --------------------------------------------------


@router.post(
    "/organizations/{org_id}/subscription",
    response={201: SubscriptionResponse, **TRANSITION_ERRORS},
    operation_id="createOrganizationSubscription",
    summary="Start a trial subscription for an organization",
)
@require_developer
def create_subscription(
    request: HttpRequest, org_id: int, payload: CreateSubscriptionRequest
) -> tuple[int, SubscriptionResponse]:
    org = _organization_by_id(org_id)
    plan = catalog.get_plan(payload.plan)
    try:
        subscription = services.create_subscription(
            org, plan, billing_cycle=payload.billing_cycle.upper(), actor=_actor(request)
        )
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return 201, _subscription_out(subscription)


@router.post(
    "/organizations/{org_id}/subscription/change-plan",
    response={200: SubscriptionResponse, **TRANSITION_ERRORS},
    operation_id="changeOrganizationPlan",
    summary="Move an organization to another plan",
)
@require_developer
def change_plan(request: HttpRequest, org_id: int, payload: ChangePlanRequest) -> SubscriptionResponse:
    org = _organization_by_id(org_id)
    plan = catalog.get_plan(payload.plan)
    return _subscription_out(services.change_plan(org, plan, actor=_actor(request)))


@router.post(
    "/organizations/{org_id}/subscription/suspend",
    response={200: SubscriptionResponse, **TRANSITION_ERRORS},
    operation_id="suspendOrganizationSubscription",
    summary="Suspend an organization",
)
@require_developer
def suspend_subscription(
    request: HttpRequest, org_id: int, payload: SuspendSubscriptionRequest
) -> SubscriptionResponse:
    org = _organization_by_id(org_id)
    subscription = services.suspend_subscription(
        org, reason=payload.reason, actor=_actor(request), message=payload.message
    )
    return _subscription_out(subscription)


@router.post(
    "/organizations/{org_id}/subscription/reactivate",
    response={200: SubscriptionResponse, **TRANSITION_ERRORS},
    operation_id="reactivateOrganizationSubscription",
    summary="Lift a suspension",
)
@require_developer
def reactivate_subscription(request: HttpRequest, org_id: int) -> SubscriptionResponse:
    org = _organization_by_id(org_id)
    return _subscription_out(services.reactivate_subscription(org, actor=_actor(request)))


@router.put(
    "/organizations/{org_id}/features/{code}",
    response={200: OrganizationFeatureResponse, **TRANSITION_ERRORS},
    operation_id="toggleOrganizationFeature",
    summary="Enable or disable a feature for an organization",
)
@require_developer
def toggle_feature(
    request: HttpRequest, org_id: int, code: str, payload: ToggleFeatureRequest
) -> OrganizationFeatureResponse:
    org = _organization_by_id(org_id)
    record = entitlements.toggle_feature(org, code, payload.enabled, actor=_actor(request), reason=payload.reason)
    return _org_feature_out(record)


@router.put(
    "/organizations/{org_id}/features/{code}/limit",
    response={200: OrganizationFeatureResponse, **ERRORS},
    operation_id="setOrganizationFeatureLimit",
    summary="Set a feature limit for an organization",
)
@require_developer
def set_feature_limit(
    request: HttpRequest, org_id: int, code: str, payload: FeatureLimitRequest
) -> OrganizationFeatureResponse:
    org = _organization_by_id(org_id)
    record = entitlements.set_feature_limit(
        org, code, payload.limit, payload.limit_type, actor=_actor(request)
    )
    return _org_feature_out(record)


# --- Payment requests -----------------------------------------------------


@router.post(
    "/payment-requests",
    response={201: PaymentRequestResponse, **ERRORS},
    operation_id="createPaymentRequest",
    summary="Create payment request for an organization",
)
@require_developer
def create_payment_request(
    request: HttpRequest, payload: PaymentRequestCreateRequest
) -> tuple[int, PaymentRequestResponse]:
    org = _organization_by_id(payload.organization_id)
    try:
        payment_request = payment_requests.create_payment_request(
            org,
            payload.request_type,
            requested_plan=payload.requested_plan,
            requested_add_ons=payload.requested_add_ons,
            amount=payload.amount,
            billing_cycle=payload.billing_cycle.upper() if payload.billing_cycle else None,
            expiry_days=payload.expiry_days,
            note=payload.note,
            actor=_actor(request),
        )
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return 201, _payment_request_out(payment_request)


@router.get(
    "/payment-requests",
    response={200: list[PaymentRequestResponse], **ERRORS},
    operation_id="listPaymentRequests",
    summary="List payment requests of the organization",
)
@require_super_admin
def list_payment_requests(request: HttpRequest, status: str | None = None) -> list[PaymentRequestResponse]:
    org = _organization(request)
    return [_payment_request_out(item) for item in payment_requests.list_payment_requests(org, status)]


@router.get(
    "/payment-requests/{request_id}",
    response={200: PaymentRequestResponse, **ERRORS},
    operation_id="getPaymentRequest",
    summary="Get payment request",
)
@require_super_admin
def get_payment_request(request: HttpRequest, request_id: int) -> PaymentRequestResponse:
    return _payment_request_out(payment_requests.get_payment_request(_organization(request), request_id))


@router.post(
    "/payment-requests/{request_id}/approve",
    response={200: PaymentRequestResponse, **TRANSITION_ERRORS},
    operation_id="approvePaymentRequest",
    summary="Approve payment request",
)
@require_super_admin
def approve_payment_request(
    request: HttpRequest, request_id: int, payload: PaymentRequestDecisionRequest
) -> PaymentRequestResponse:
    """Records the decision only; the subscription changes once paid."""
    item = payment_requests.get_payment_request(_organization(request), request_id)
    item = payment_requests.approve_payment_request(item, actor=_actor(request), note=payload.note)
    return _payment_request_out(item)


@router.post(
    "/payment-requests/{request_id}/reject",
    response={200: PaymentRequestResponse, **TRANSITION_ERRORS},
    operation_id="rejectPaymentRequest",
    summary="Reject payment request",
)
@require_super_admin
def reject_payment_request(
    request: HttpRequest, request_id: int, payload: PaymentRequestDecisionRequest
) -> PaymentRequestResponse:
    item = payment_requests.get_payment_request(_organization(request), request_id)
    try:
        item = payment_requests.reject_payment_request(item, payload.note, actor=_actor(request))
    except ValueError as e:
        raise HttpError(400, str(e)) from None
    return _payment_request_out(item)


@router.post(
    "/payment-requests/{request_id}/pay",
    response={200: PaymentRequestResponse, **TRANSITION_ERRORS},
    operation_id="payPaymentRequest",
    summary="Mark payment request as paid",
)
@require_super_admin
def pay_payment_request(
    request: HttpRequest, request_id: int, payload: PaymentRequestPayRequest
) -> PaymentRequestResponse:
    item = payment_requests.get_payment_request(_organization(request), request_id)
    payment = services.PaymentConfirmation(payload.transaction_id, payload.amount, payload.invoice_url)
    item = payment_requests.mark_payment_request_paid(item, payment, actor=_actor(request))
    return _payment_request_out(item)
