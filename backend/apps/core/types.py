"""
Custom type definitions for the application.

These types help mypy understand custom attributes added by middleware.
"""

from typing import TYPE_CHECKING, Any

from django.http import HttpRequest

if TYPE_CHECKING:
    from apps.core.auth import AuthContext


class AuthenticatedHttpRequest(HttpRequest):
    """
    HttpRequest with the context added by AuthContextMiddleware and the
    billing gates.
    """

    auth: "AuthContext"
    correlation_id: Any
    feature_access: dict[str, Any]
    feature_limit: dict[str, Any]
    trial_status: dict[str, Any]
    enabled_features: set[str]
