"""
Billing middleware.
"""

from collections.abc import Callable

from django.http import HttpRequest, HttpResponse

from apps.billing.decorators import TRIAL_WARNING_HEADER


class TrialWarningMiddleware:
    """Sends the trial warning set by ``check_trial_status`` as a response header."""

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        response = self.get_response(request)
        trial_status = getattr(request, "trial_status", None)
        if trial_status and trial_status.get("warning"):
            response[TRIAL_WARNING_HEADER] = trial_status["warning"]
        return response
