"""
Core middleware.
"""

from collections.abc import Callable
from uuid import UUID, uuid4

from django.http import HttpRequest, HttpResponse

from apps.core.auth import AuthContext
from apps.core.logging import bind_contextvars, clear_contextvars, get_logger

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
ORGANIZATION_HEADER = "HTTP_X_ORGANIZATION"


class CorrelationIdMiddleware:
    """
    Assigns every request a correlation id.

    Reuses a valid incoming X-Correlation-ID, binds it into structlog
    contextvars for the duration of the request and echoes it on the response.
    Audit entries written during the request pick it up from the context.
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        correlation_id = self._parse(request.headers.get(CORRELATION_ID_HEADER)) or uuid4()
        request.correlation_id = correlation_id  # type: ignore[attr-defined]

        clear_contextvars()
        bind_contextvars(
            correlation_id=str(correlation_id),
            **{"http.method": request.method, "http.path": request.path},
        )
        try:
            response = self.get_response(request)
        finally:
            clear_contextvars()

        response[CORRELATION_ID_HEADER] = str(correlation_id)
        return response

    @staticmethod
    def _parse(value: str | None) -> UUID | None:
        if not value:
            return None
        try:
            return UUID(value)
        except ValueError:
            return None


class AuthContextMiddleware:
    """
    Builds the AuthContext for the session user.

    Organization context comes from the user's membership. Users with several
    memberships, and platform developers acting on a tenant, pick the
    organization with the ``X-Organization`` header (organization slug).
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        request.auth_context = self.resolve(request)  # type: ignore[attr-defined]
        return self.get_response(request)

    def resolve(self, request: HttpRequest) -> AuthContext:
        from apps.accounts.models import Member
        from apps.organizations.models import Organization

        user = getattr(request, "user", None)
        if user is None or not user.is_authenticated:
            return AuthContext()

        slug = request.META.get(ORGANIZATION_HEADER, "").strip()
        memberships = Member.objects.filter(user=user).select_related("organization")
        if slug:
            memberships = memberships.filter(organization__slug=slug)

        member = memberships.first()
        if member is not None:
            ctx = AuthContext(user=user, member=member, organization=member.organization)
        elif slug and user.is_staff:
            ctx = AuthContext(user=user, organization=Organization.objects.filter(slug=slug).first())
        else:
            ctx = AuthContext(user=user)

        if ctx.organization is not None:
            bind_contextvars(**{"organization.id": str(ctx.organization.pk)})
        bind_contextvars(**{"usr.id": str(user.pk)})
        return ctx
