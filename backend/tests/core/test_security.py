"""
Tests for core security module.

Tests member_auth and the developer / super admin endpoint decorators.
"""

import pytest
from ninja.errors import HttpError

from apps.core.auth import AuthContext
from apps.core.security import get_auth_context, member_auth, require_developer, require_super_admin
from tests.accounts.factories import MemberFactory, UserFactory
from tests.conftest import MockRequest, make_request_with_auth


def _endpoint(request):
    return "ok"


class TestMemberAuth:
    def test_returns_context_for_authenticated_user(self) -> None:
        request = MockRequest()
        ctx = AuthContext(user=UserFactory.build())
        request.auth_context = ctx

        assert member_auth(request) is ctx

    def test_returns_none_when_anonymous(self) -> None:
        request = MockRequest()
        request.auth_context = AuthContext()

        assert member_auth(request) is None

    def test_missing_context_is_anonymous(self) -> None:
        assert get_auth_context(MockRequest()).is_authenticated is False


@pytest.mark.django_db
class TestRequireDeveloper:
    def test_staff_user_passes(self, request_factory) -> None:
        request = make_request_with_auth(request_factory.get("/"), AuthContext(user=UserFactory(is_staff=True)))

        assert require_developer(_endpoint)(request) == "ok"

    def test_developer_member_passes(self, request_factory) -> None:
        member = MemberFactory(role="developer")
        request = make_request_with_auth(
            request_factory.get("/"), AuthContext(user=member.user, member=member, organization=member.organization)
        )

        assert require_developer(_endpoint)(request) == "ok"

    def test_super_admin_is_403(self, request_factory) -> None:
        member = MemberFactory(role="super_admin")
        request = make_request_with_auth(
            request_factory.get("/"), AuthContext(user=member.user, member=member, organization=member.organization)
        )

        with pytest.raises(HttpError) as exc_info:
            require_developer(_endpoint)(request)

        assert exc_info.value.status_code == 403

    def test_anonymous_is_401(self, request_factory) -> None:
        request = make_request_with_auth(request_factory.get("/"), AuthContext())

        with pytest.raises(HttpError) as exc_info:
            require_developer(_endpoint)(request)

        assert exc_info.value.status_code == 401


@pytest.mark.django_db
class TestRequireSuperAdmin:
    @pytest.mark.parametrize(("role", "allowed"), [("super_admin", True), ("admin", False), ("member", False)])
    def test_roles(self, request_factory, role: str, allowed: bool) -> None:
        member = MemberFactory(role=role)
        request = make_request_with_auth(
            request_factory.get("/"), AuthContext(user=member.user, member=member, organization=member.organization)
        )

        if allowed:
            assert require_super_admin(_endpoint)(request) == "ok"
        else:
            with pytest.raises(HttpError) as exc_info:
                require_super_admin(_endpoint)(request)
            assert exc_info.value.status_code == 403

    def test_no_organization_is_400(self, request_factory) -> None:
        request = make_request_with_auth(request_factory.get("/"), AuthContext(user=UserFactory()))

        with pytest.raises(HttpError) as exc_info:
            require_super_admin(_endpoint)(request)

        assert exc_info.value.status_code == 400

    def test_developer_passes(self, request_factory) -> None:
        user = UserFactory(is_staff=True)
        org = MemberFactory().organization
        request = make_request_with_auth(request_factory.get("/"), AuthContext(user=user, organization=org))

        assert require_super_admin(_endpoint)(request) == "ok"
