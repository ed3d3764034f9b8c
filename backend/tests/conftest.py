"""
Shared pytest fixtures for all tests.

This module provides common fixtures used across multiple test modules.
Individual test modules can override these fixtures if needed.

Factories
---------
Import factories directly from their modules:

    from tests.accounts.factories import UserFactory, OrganizationFactory, MemberFactory
    from tests.billing.factories import PlanFactory, SubscriptionFactory

Example usage:

    @pytest.mark.django_db
    def test_something():
        org = OrganizationFactory.create()
        member = MemberFactory.create(organization=org, role="super_admin")
"""

from typing import Any, cast

import pytest
from django.http import HttpRequest
from django.test import Client, RequestFactory
from django.test.client import WSGIRequest  # type: ignore[attr-defined]

from apps.core.auth import AuthContext
from apps.core.cache import get_cache_port, set_cache_port
from apps.core.types import AuthenticatedHttpRequest


@pytest.fixture(autouse=True)
def clear_cache():
    """Every test starts with an empty cache and the default cache port."""
    set_cache_port(None)
    get_cache_port().clear()
    yield
    set_cache_port(None)


class MockRequest(HttpRequest):
    """
    HttpRequest subclass for tests that allows setting auth attribute.

    Example:
        request = MockRequest()
        request.auth = AuthContext(user=user, member=member, organization=org)
    """

    auth: AuthContext


def make_request_with_auth(request: "WSGIRequest", auth: AuthContext) -> AuthenticatedHttpRequest:
    """
    Set auth on a request and return it typed as AuthenticatedHttpRequest.

    Example:
        request = request_factory.get("/api/v1/billing/subscription")
        request = make_request_with_auth(request, AuthContext(user=user, member=member))
    """
    request.auth = auth  # type: ignore[attr-defined]
    return cast(AuthenticatedHttpRequest, request)


@pytest.fixture
def request_factory() -> RequestFactory:
    """
    Django request factory for unit testing views.

    Use this to call Django Ninja endpoint functions directly, without
    routing or middleware.
    """
    return RequestFactory()


@pytest.fixture
def api_client() -> Client:
    """
    Django test client for full HTTP request/response cycle tests.

    Example:
        def test_api_returns_200(api_client):
            response = api_client.get("/api/v1/health")
            assert response.status_code == 200
    """
    return Client()


def create_authenticated_request(
    request_factory: RequestFactory,
    method: str,
    path: str,
    org: Any = None,
    role: str = "super_admin",
    data: dict | None = None,
) -> AuthenticatedHttpRequest:
    """
    Create a request authenticated as a member of ``org`` with ``role``.

    Creates the organization, user and member if needed. Role "developer"
    creates a staff user (platform developer).
    """
    from tests.accounts.factories import MemberFactory, OrganizationFactory, UserFactory

    if org is None:
        org = OrganizationFactory.create()
    user = UserFactory.create(is_staff=role == "developer")
    member = MemberFactory.create(user=user, organization=org, role=role)

    method_func = getattr(request_factory, method.lower())
    kwargs: dict[str, Any] = {}
    if data is not None:
        kwargs["data"] = data
        kwargs["content_type"] = "application/json"
    request = method_func(path, **kwargs)

    return make_request_with_auth(request, AuthContext(user=user, member=member, organization=org))


@pytest.fixture
def super_admin_member(db):
    """Member who manages billing for their organization."""
    from tests.accounts.factories import MemberFactory

    return MemberFactory.create(role="super_admin")


@pytest.fixture
def developer_user(db):
    """Platform developer (staff user without membership)."""
    from tests.accounts.factories import UserFactory

    return UserFactory.create(is_staff=True)
