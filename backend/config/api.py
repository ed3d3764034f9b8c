"""
Django Ninja API configuration.
"""

from django.http import HttpRequest, HttpResponse
from ninja import NinjaAPI

from apps.billing.api import router as billing_router
from apps.billing.exceptions import BillingError
from apps.core.logging import get_logger

logger = get_logger(__name__)

api = NinjaAPI(
    title="Alumni Billing API",
    version="1.0.0",
    description="Subscription lifecycle and feature entitlements for alumni organizations.",
    openapi_extra={
        "info": {
            "contact": {"name": "API Support"},
        },
        "tags": [
            {
                "name": "billing",
                "description": "Plans, features, subscriptions, payment requests and usage",
            },
            {
                "name": "health",
                "description": "Service health and readiness checks",
            },
        ],
    },
)

# Register routers
api.add_router("/billing", billing_router)


@api.exception_handler(BillingError)
def billing_error_handler(request: HttpRequest, exc: BillingError) -> HttpResponse:
    """Render domain errors as {"detail": ..., **context} with their status code."""
    logger.info(
        "billing_error",
        error=type(exc).__name__,
        status_code=exc.status_code,
        detail=exc.message,
    )
    return api.create_response(request, exc.to_dict(), status=exc.status_code)


@api.get("/health", auth=None, tags=["health"], operation_id="healthCheck", summary="Health check")
def health_check(request: HttpRequest) -> dict:
    """Health check endpoint for load balancer."""
    return {"status": "ok"}
