"""
Core security - authentication for the API.
"""

from collections.abc import Callable
from functools import wraps
from typing import Any

from django.http import HttpRequest

from apps.core.auth import AuthContext


def get_auth_context(request: HttpRequest) -> AuthContext:
    """
    Return the AuthContext for a request.

    Set by AuthContextMiddleware (or directly in tests). Missing context is
    treated as anonymous.
    """
    auth = getattr(request, "auth", None)
    if isinstance(auth, AuthContext):
        return auth
    return AuthContext()


def member_auth(request: HttpRequest) -> AuthContext | None:
    """
    django-ninja auth callable.

    Returns the AuthContext when the request carries an authenticated user,
    None otherwise (ninja then answers 401).
    """
    ctx = getattr(request, "auth_context", None) or get_auth_context(request)
    return ctx if ctx.is_authenticated else None


def require_developer(func: Callable[..., Any]) -> Callable[..., Any]:
    """Endpoint decorator: platform developers only (403 otherwise)."""

    @wraps(func)
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
        get_auth_context(request).require_developer()
        return func(request, *args, **kwargs)

    return wrapper


def require_super_admin(func: Callable[..., Any]) -> Callable[..., Any]:
    """Endpoint decorator: organization super admins and developers only."""

    @wraps(func)
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
        get_auth_context(request).require_super_admin()
        return func(request, *args, **kwargs)

    return wrapper
