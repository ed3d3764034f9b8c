"""
Core schemas - shared Pydantic models for API responses.
"""

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    detail: str = Field(..., description="Human-readable error message")

    model_config = {"json_schema_extra": {"example": {"detail": "Subscription not found"}}}


class EntitlementErrorResponse(BaseModel):
    """
    Error body for gate failures (403/402/429).

    Carries the context the client needs to render an upgrade or renewal
    prompt, e.g. ``feature``, ``featureName``, ``upgradeRequired``.
    """

    detail: str = Field(..., description="Human-readable error message")

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "detail": "This feature requires a higher subscription plan",
                "feature": "TREASURY",
                "featureName": "Treasury Management",
                "isPremium": True,
                "isAddOn": False,
                "upgradeRequired": True,
            }
        },
    )
