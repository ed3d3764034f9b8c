"""
Tests for accounts models.
"""

import pytest
from django.db import IntegrityError

from apps.accounts.models import Member, User
from tests.accounts.factories import MemberFactory, OrganizationFactory, UserFactory


@pytest.mark.django_db
class TestUserModel:
    """Tests for User model."""

    def test_create_user_normalizes_email(self) -> None:
        user = User.objects.create_user("Someone@EXAMPLE.com")

        assert user.email == "Someone@example.com"
        assert user.has_usable_password() is False
        assert user.is_staff is False

    def test_create_user_requires_email(self) -> None:
        with pytest.raises(ValueError, match="Email is required"):
            User.objects.create_user("")

    def test_superuser_is_platform_developer(self) -> None:
        user = User.objects.create_superuser("ops@example.com", password="s3cret-pass")

        assert user.is_staff is True
        assert user.is_superuser is True
        assert user.check_password("s3cret-pass")

    def test_email_unique(self) -> None:
        UserFactory.create(email="duplicate@example.com")

        with pytest.raises(IntegrityError):
            UserFactory.create(email="duplicate@example.com")

    def test_str(self) -> None:
        assert str(UserFactory.create(email="a@example.com")) == "a@example.com"


@pytest.mark.django_db
class TestMemberModel:
    """Tests for Member model."""

    def test_role_flags(self) -> None:
        super_admin = MemberFactory.create(role=Member.Role.SUPER_ADMIN)
        admin = MemberFactory.create(role=Member.Role.ADMIN)
        member = MemberFactory.create()

        assert super_admin.is_super_admin and super_admin.is_admin
        assert not admin.is_super_admin and admin.is_admin
        assert not member.is_admin
        assert not member.is_developer

    def test_staff_user_membership_is_developer(self) -> None:
        member = MemberFactory.create(user=UserFactory.create(is_staff=True))

        assert member.is_developer is True

    def test_one_membership_per_organization(self) -> None:
        user = UserFactory.create()
        org = OrganizationFactory.create()
        MemberFactory.create(user=user, organization=org)

        with pytest.raises(IntegrityError):
            MemberFactory.create(user=user, organization=org)

    def test_str(self) -> None:
        member = MemberFactory.create(
            user=UserFactory.create(email="x@example.com"),
            organization=OrganizationFactory.create(name="IIT Alumni"),
            role=Member.Role.ADMIN,
        )

        assert str(member) == "x@example.com @ IIT Alumni (admin)"
