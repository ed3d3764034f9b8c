"""
Authentication context for request lifecycle.

Provides a typed container for authentication state that middleware
populates and endpoints consume.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ninja.errors import HttpError

if TYPE_CHECKING:
    from apps.accounts.models import Member, User
    from apps.organizations.models import Organization


@dataclass
class AuthContext:
    """
    Authentication context attached to requests by AuthContextMiddleware.

    Attributes:
        user: The authenticated User, or None if not authenticated
        member: The Member record linking user to organization, or None
        organization: The Organization the request acts within, or None
        failed: True if auth was attempted but failed (vs just not present)
    """

    user: "User | None" = None
    member: "Member | None" = None
    organization: "Organization | None" = None
    failed: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def is_developer(self) -> bool:
        """Platform developers bypass every feature and subscription gate."""
        if self.user is not None and self.user.is_staff:
            return True
        return self.member is not None and self.member.is_developer

    @property
    def role(self) -> str:
        """Role label recorded in audit entries."""
        if self.is_developer:
            return "DEVELOPER"
        if self.member is not None:
            return self.member.role.upper()
        return "ANONYMOUS"

    @property
    def actor_id(self) -> str | None:
        return str(self.user.pk) if self.user is not None else None

    def require_auth(self) -> "User":
        """
        Get the authenticated user or raise 401.

        Raises:
            HttpError 401: If not authenticated
        """
        if self.user is None:
            raise HttpError(401, "Not authenticated")
        return self.user

    def require_organization(self) -> "Organization":
        """
        Get the organization the request acts within.

        Raises:
            HttpError 401: If not authenticated
            HttpError 400: If no organization context could be resolved
        """
        self.require_auth()
        if self.organization is None:
            raise HttpError(400, "Organization context required")
        return self.organization

    def require_developer(self) -> "User":
        """
        Verify platform developer access.

        Raises:
            HttpError 401: If not authenticated
            HttpError 403: If not a developer
        """
        user = self.require_auth()
        if not self.is_developer:
            raise HttpError(403, "Developer access required")
        return user

    def require_super_admin(self) -> "Organization":
        """
        Verify the caller manages billing for the organization.

        Super admins of the organization and platform developers pass.

        Raises:
            HttpError 401: If not authenticated
            HttpError 400: If no organization context
            HttpError 403: If neither super admin nor developer
        """
        org = self.require_organization()
        if self.is_developer:
            return org
        if self.member is None or not self.member.is_super_admin:
            raise HttpError(403, "Super admin access required")
        return org
