"""
Payment request workflow.

    PENDING -> APPROVED -> PAID
    PENDING -> REJECTED
    PENDING -> EXPIRED (once expires_at passes)

Expiry is read lazily through ``effective_status``: a PENDING request past
``expires_at`` is inert for every consumer whether or not the sweep has
written EXPIRED back yet. Approval only records the decision; the
subscription changes when the request is marked paid.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.billing.audit import SYSTEM_ACTOR, Actor, log_audit
from apps.billing.catalog import get_feature_or_404, get_plan
from apps.billing.constants import AuditEvent
from apps.billing.entitlements import purchase_add_on
from apps.billing.exceptions import InvalidTransitionError, NotFoundError
from apps.billing.models import OrganizationSubscription, SubscriptionPaymentRequest, SubscriptionPlan
from apps.billing.services import (
    PaymentConfirmation,
    activate_subscription,
    change_plan,
    get_subscription_or_404,
    period_length,
)
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)

RequestStatus = SubscriptionPaymentRequest.Status
RequestType = SubscriptionPaymentRequest.RequestType
BillingCycle = OrganizationSubscription.BillingCycle


def compute_amount(
    request_type: str,
    plan: SubscriptionPlan | None,
    billing_cycle: str,
    add_on_codes: list[str] | None = None,
) -> Decimal:
    """
    Price of a request when the requester does not supply one.

    Plans: yearly price for YEARLY, three months for QUARTERLY, else monthly.
    Add-ons: sum of the add-on prices for the cycle (yearly or monthly).
    """
    if request_type == RequestType.ADD_ON:
        total = Decimal("0")
        for code in add_on_codes or []:
            feature = get_feature_or_404(code)
            if billing_cycle == BillingCycle.YEARLY:
                total += feature.add_on_price_yearly or Decimal("0")
            elif billing_cycle == BillingCycle.QUARTERLY:
                total += (feature.add_on_price_monthly or Decimal("0")) * 3
            else:
                total += feature.add_on_price_monthly or Decimal("0")
        return total

    if plan is None:
        raise ValueError("A plan is required to compute the amount")
    if billing_cycle == BillingCycle.YEARLY:
        return Decimal(plan.price_yearly)
    if billing_cycle == BillingCycle.QUARTERLY:
        return Decimal(plan.price_monthly) * 3
    return Decimal(plan.price_monthly)


def create_payment_request(
    org: Organization,
    request_type: str,
    *,
    requested_plan: Any = None,
    requested_add_ons: list[str] | None = None,
    amount: Decimal | None = None,
    billing_cycle: str | None = None,
    expiry_days: int | None = None,
    note: str = "",
    actor: Actor = SYSTEM_ACTOR,
    now: datetime | None = None,
) -> SubscriptionPaymentRequest:
    """
    Raises:
        NotFoundError: No subscription, plan or add-on feature.
        ValueError: Missing plan for an upgrade, missing add-ons, bad cycle.
    """
    now = now or timezone.now()
    subscription = get_subscription_or_404(org.pk)
    request_type = str(request_type).upper()
    if request_type not in RequestType.values:
        raise ValueError(f"Unknown request type: {request_type}")

    cycle = billing_cycle or subscription.billing_cycle
    period_length(cycle)

    plan = None
    if requested_plan is not None:
        plan = requested_plan if isinstance(requested_plan, SubscriptionPlan) else get_plan(requested_plan)
    if request_type == RequestType.UPGRADE and plan is None:
        raise ValueError("Upgrade requests require a plan")
    if request_type == RequestType.RENEWAL and plan is None:
        plan = subscription.plan

    add_ons = [get_feature_or_404(code).code for code in requested_add_ons or []]
    if request_type == RequestType.ADD_ON:
        if not add_ons:
            raise ValueError("Add-on requests require at least one add-on")
        for code in add_ons:
            if not get_feature_or_404(code).is_add_on:
                raise ValueError(f"Feature {code} is not an add-on")

    if amount is None:
        amount = compute_amount(request_type, plan, cycle, add_ons)

    days = expiry_days if expiry_days is not None else settings.PAYMENT_REQUEST_EXPIRY_DAYS
    request = SubscriptionPaymentRequest.objects.create(
        subscription=subscription,
        request_type=request_type,
        requested_plan=plan,
        requested_add_ons=add_ons,
        amount=amount,
        currency=plan.currency if plan is not None else settings.BILLING_DEFAULT_CURRENCY,
        billing_cycle=cycle,
        requested_by=actor.user,
        request_note=note,
        expires_at=now + timedelta(days=days),
    )

    log_audit(
        org.pk,
        AuditEvent.PAYMENT_REQUEST_CREATED,
        details={
            "payment_request_id": request.pk,
            "request_type": request_type,
            "amount": str(amount),
            "billing_cycle": cycle,
        },
        actor=actor,
    )
    logger.info(
        "payment_request_created",
        organization_id=str(org.pk),
        payment_request_id=request.pk,
        request_type=request_type,
        amount=str(amount),
    )
    return request


def get_pending_payment_requests(org: Organization, now: datetime | None = None) -> list[SubscriptionPaymentRequest]:
    """PENDING requests that have not expired."""
    now = now or timezone.now()
    return list(
        SubscriptionPaymentRequest.objects.filter(
            subscription__organization=org,
            status=RequestStatus.PENDING,
            expires_at__gt=now,
        )
    )


def list_payment_requests(
    org: Organization,
    status: str | None = None,
    now: datetime | None = None,
) -> list[SubscriptionPaymentRequest]:
    """Requests of an organization, filtered by effective status."""
    now = now or timezone.now()
    requests = SubscriptionPaymentRequest.objects.filter(subscription__organization=org).select_related(
        "requested_plan"
    )
    if status is None:
        return list(requests)
    status = status.upper()
    return [request for request in requests if request.effective_status(now) == status]


def get_payment_request(org: Organization, request_id: int) -> SubscriptionPaymentRequest:
    request = (
        SubscriptionPaymentRequest.objects.select_related("subscription", "requested_plan")
        .filter(pk=request_id, subscription__organization=org)
        .first()
    )
    if request is None:
        raise NotFoundError("Payment request not found", paymentRequestId=request_id)
    return request


def _lock_request(request: SubscriptionPaymentRequest) -> SubscriptionPaymentRequest:
    """Fresh, row-locked copy of the request. Call inside transaction.atomic()."""
    return SubscriptionPaymentRequest.objects.select_for_update().get(pk=request.pk)


def _require_status(request: SubscriptionPaymentRequest, allowed: set[str], action: str, now: datetime) -> None:
    status = request.effective_status(now)
    if status not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action} a payment request in status {status}",
            paymentRequestId=request.pk,
            paymentRequestStatus=status,
        )


def approve_payment_request(
    request: SubscriptionPaymentRequest,
    actor: Actor = SYSTEM_ACTOR,
    note: str = "",
    now: datetime | None = None,
) -> SubscriptionPaymentRequest:
    """Record approval. The subscription is not touched."""
    now = now or timezone.now()
    with transaction.atomic():
        request = _lock_request(request)
        _require_status(request, {RequestStatus.PENDING}, "approve", now)

        request.status = RequestStatus.APPROVED
        request.responded_by = actor.user
        request.responded_at = now
        request.response_note = note
        request.save()

    log_audit(
        request.subscription.organization_id,
        AuditEvent.PAYMENT_REQUEST_APPROVED,
        details={"payment_request_id": request.pk},
        actor=actor,
    )
    logger.info("payment_request_approved", payment_request_id=request.pk)
    return request


def reject_payment_request(
    request: SubscriptionPaymentRequest,
    note: str,
    actor: Actor = SYSTEM_ACTOR,
    now: datetime | None = None,
) -> SubscriptionPaymentRequest:
    """
    Raises:
        ValueError: No rejection note.
        InvalidTransitionError: Request is not pending.
    """
    now = now or timezone.now()
    if not note or not note.strip():
        raise ValueError("A note is required to reject a payment request")
    with transaction.atomic():
        request = _lock_request(request)
        _require_status(request, {RequestStatus.PENDING}, "reject", now)

        request.status = RequestStatus.REJECTED
        request.responded_by = actor.user
        request.responded_at = now
        request.response_note = note
        request.save()

    log_audit(
        request.subscription.organization_id,
        AuditEvent.PAYMENT_REQUEST_REJECTED,
        details={"payment_request_id": request.pk, "note": note},
        actor=actor,
    )
    logger.info("payment_request_rejected", payment_request_id=request.pk)
    return request


def mark_payment_request_paid(
    request: SubscriptionPaymentRequest,
    payment: PaymentConfirmation,
    actor: Actor = SYSTEM_ACTOR,
    now: datetime | None = None,
) -> SubscriptionPaymentRequest:
    """
    Record payment and apply it to the subscription.

    RENEWAL activates a new period, UPGRADE changes plan then activates,
    ADD_ON grants each requested add-on for one billing period.
    """
    now = now or timezone.now()
    with transaction.atomic():
        request = _lock_request(request)
        _require_status(request, {RequestStatus.PENDING, RequestStatus.APPROVED}, "pay", now)

        org = request.subscription.organization
        if payment.amount is None:
            payment = PaymentConfirmation(payment.transaction_id, request.amount, payment.invoice_url)

        if request.request_type == RequestType.RENEWAL:
            activate_subscription(org, payment, actor=actor, billing_cycle=request.billing_cycle, now=now)
        elif request.request_type == RequestType.UPGRADE:
            change_plan(org, request.requested_plan, actor=actor)
            activate_subscription(org, payment, actor=actor, billing_cycle=request.billing_cycle, now=now)
        else:
            expires_at = now + period_length(request.billing_cycle)
            for code in request.requested_add_ons:
                purchase_add_on(org, code, expires_at, payment_id=payment.transaction_id, actor=actor)

        request.status = RequestStatus.PAID
        request.payment_transaction_id = payment.transaction_id
        request.paid_amount = payment.amount
        request.paid_at = now
        request.invoice_url = payment.invoice_url
        request.save()

    log_audit(
        org.pk,
        AuditEvent.PAYMENT_REQUEST_PAID,
        details={
            "payment_request_id": request.pk,
            "request_type": request.request_type,
            "transaction_id": payment.transaction_id,
            "amount": str(payment.amount),
        },
        actor=actor,
    )
    logger.info(
        "payment_request_paid",
        organization_id=str(org.pk),
        payment_request_id=request.pk,
        request_type=request.request_type,
    )
    return request


def expire_stale_payment_requests(now: datetime | None = None) -> int:
    """Write EXPIRED back onto PENDING requests past expiry. Returns the count."""
    now = now or timezone.now()
    count = SubscriptionPaymentRequest.objects.filter(
        status=RequestStatus.PENDING,
        expires_at__lte=now,
    ).update(status=RequestStatus.EXPIRED, updated_at=now)
    if count:
        logger.info("payment_requests_expired", count=count)
    return count
