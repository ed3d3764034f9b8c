"""
Billing audit trail.

Audit writes are a best-effort side channel: each entry is written in its own
savepoint and any failure is logged and dropped, so an unavailable audit
table never unwinds the business operation that triggered it.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from django.db import transaction
from django.db.models import QuerySet

from apps.billing.constants import SYSTEM_ORGANIZATION_ID
from apps.billing.models import SubscriptionAuditLog
from apps.core.logging import get_contextvars, get_logger

if TYPE_CHECKING:
    from apps.accounts.models import User
    from apps.core.auth import AuthContext

logger = get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who performed an operation. No user means the system (sweeper, seed)."""

    user: "User | None" = None
    role: str = "SYSTEM"

    @classmethod
    def from_auth(cls, ctx: "AuthContext") -> "Actor":
        return cls(user=ctx.user, role=ctx.role)

    @property
    def id(self) -> str:
        return str(self.user.pk) if self.user is not None else ""


SYSTEM_ACTOR = Actor()


def log_audit(
    organization_id: Any,
    event_type: str,
    *,
    details: dict[str, Any] | None = None,
    previous_status: str = "",
    new_status: str = "",
    previous_plan_id: Any = "",
    new_plan_id: Any = "",
    actor: Actor = SYSTEM_ACTOR,
) -> SubscriptionAuditLog | None:
    """
    Append an audit entry. Returns None if the write failed.

    ``organization_id`` of None files the entry under SYSTEM.
    """
    correlation_id = get_contextvars().get("correlation_id", "")
    try:
        with transaction.atomic():
            entry = SubscriptionAuditLog.objects.create(
                organization_id=str(organization_id) if organization_id is not None else SYSTEM_ORGANIZATION_ID,
                event_type=str(event_type),
                event_details=details or {},
                previous_status=previous_status or "",
                new_status=new_status or "",
                previous_plan_id=str(previous_plan_id or ""),
                new_plan_id=str(new_plan_id or ""),
                performed_by=actor.id,
                performed_by_role=actor.role,
                correlation_id=str(correlation_id),
            )
    except Exception:
        logger.error(
            "audit_log_write_failed",
            organization_id=str(organization_id),
            event_type=str(event_type),
            exc_info=True,
        )
        return None
    return entry


def list_audit_logs(
    organization_id: Any,
    event_type: str | None = None,
    limit: int = 100,
) -> QuerySet[SubscriptionAuditLog]:
    queryset = SubscriptionAuditLog.objects.filter(organization_id=str(organization_id))
    if event_type:
        queryset = queryset.filter(event_type=event_type.upper())
    return queryset[:limit]
