"""
Billing constants - feature codes, default catalog, lifecycle tables.
"""

from datetime import timedelta
from enum import StrEnum


class FeatureCategory(StrEnum):
    CORE = "CORE"
    COMMUNICATION = "COMMUNICATION"
    ENGAGEMENT = "ENGAGEMENT"
    ADMIN = "ADMIN"
    PREMIUM = "PREMIUM"


class FeatureCode(StrEnum):
    """
    Known feature codes.

    Catalog writes validate codes against this enumeration; the gates and
    services accept either a member or its string value.
    """

    # Core (always available)
    DASHBOARD = "DASHBOARD"
    PROFILE = "PROFILE"
    DIRECTORY = "DIRECTORY"

    # Communication
    POSTS = "POSTS"
    NOTIFICATIONS = "NOTIFICATIONS"
    EMAIL_CAMPAIGNS = "EMAIL_CAMPAIGNS"

    # Engagement
    EVENTS = "EVENTS"
    POLLS = "POLLS"
    GROUPS = "GROUPS"
    GALLERY = "GALLERY"

    # Admin
    USER_MANAGEMENT = "USER_MANAGEMENT"
    BATCH_MANAGEMENT = "BATCH_MANAGEMENT"
    ANALYTICS = "ANALYTICS"
    REPORTS = "REPORTS"

    # Premium
    TREASURY = "TREASURY"
    MEMBERSHIP = "MEMBERSHIP"
    LIFELINK = "LIFELINK"
    MERCHANDISE = "MERCHANDISE"
    SUPPORT_TICKETS = "SUPPORT_TICKETS"

    # Premium add-ons
    CUSTOM_DOMAIN_EMAIL = "CUSTOM_DOMAIN_EMAIL"
    CUSTOM_PUSH = "CUSTOM_PUSH"
    WHITE_LABEL = "WHITE_LABEL"
    API_ACCESS = "API_ACCESS"


def normalize_feature_code(code: "str | FeatureCode") -> str:
    """Upper-case and strip a feature code. Raises ValueError if empty."""
    value = str(code).strip().upper()
    if not value:
        raise ValueError("Feature code is required")
    return value


def parse_feature_code(code: "str | FeatureCode") -> FeatureCode:
    """
    Validate a code against the closed enumeration.

    Raises:
        ValueError: If the code is not a known feature.
    """
    value = normalize_feature_code(code)
    try:
        return FeatureCode(value)
    except ValueError:
        raise ValueError(f"Unknown feature code: {value}") from None


DEFAULT_FEATURES: list[dict] = [
    {"code": FeatureCode.DASHBOARD, "name": "Dashboard", "category": FeatureCategory.CORE, "is_core": True},
    {"code": FeatureCode.PROFILE, "name": "User Profile", "category": FeatureCategory.CORE, "is_core": True},
    {"code": FeatureCode.DIRECTORY, "name": "Alumni Directory", "category": FeatureCategory.CORE, "is_core": True},
    {"code": FeatureCode.POSTS, "name": "Social Posts", "category": FeatureCategory.COMMUNICATION},
    {"code": FeatureCode.NOTIFICATIONS, "name": "Push Notifications", "category": FeatureCategory.COMMUNICATION},
    {
        "code": FeatureCode.EMAIL_CAMPAIGNS,
        "name": "Email Campaigns",
        "category": FeatureCategory.COMMUNICATION,
        "is_premium": True,
    },
    {"code": FeatureCode.EVENTS, "name": "Event Management", "category": FeatureCategory.ENGAGEMENT},
    {"code": FeatureCode.POLLS, "name": "Polls & Surveys", "category": FeatureCategory.ENGAGEMENT},
    {"code": FeatureCode.GROUPS, "name": "Groups & Communities", "category": FeatureCategory.ENGAGEMENT},
    {"code": FeatureCode.GALLERY, "name": "Photo Gallery", "category": FeatureCategory.ENGAGEMENT},
    {"code": FeatureCode.USER_MANAGEMENT, "name": "User Management", "category": FeatureCategory.ADMIN},
    {"code": FeatureCode.BATCH_MANAGEMENT, "name": "Batch Management", "category": FeatureCategory.ADMIN},
    {"code": FeatureCode.ANALYTICS, "name": "Analytics Dashboard", "category": FeatureCategory.ADMIN},
    {"code": FeatureCode.REPORTS, "name": "Reports & Exports", "category": FeatureCategory.ADMIN, "is_premium": True},
    {"code": FeatureCode.TREASURY, "name": "Treasury Management", "category": FeatureCategory.PREMIUM, "is_premium": True},
    {"code": FeatureCode.MEMBERSHIP, "name": "Membership System", "category": FeatureCategory.PREMIUM, "is_premium": True},
    {"code": FeatureCode.LIFELINK, "name": "LifeLink Blood Donor", "category": FeatureCategory.PREMIUM, "is_premium": True},
    {"code": FeatureCode.MERCHANDISE, "name": "Merchandise Store", "category": FeatureCategory.PREMIUM, "is_premium": True},
    {"code": FeatureCode.SUPPORT_TICKETS, "name": "Support Tickets", "category": FeatureCategory.PREMIUM, "is_premium": True},
    {
        "code": FeatureCode.CUSTOM_DOMAIN_EMAIL,
        "name": "Custom Domain Email",
        "category": FeatureCategory.PREMIUM,
        "is_premium": True,
        "is_add_on": True,
    },
    {
        "code": FeatureCode.CUSTOM_PUSH,
        "name": "Custom Push Notifications",
        "category": FeatureCategory.PREMIUM,
        "is_premium": True,
        "is_add_on": True,
    },
    {
        "code": FeatureCode.WHITE_LABEL,
        "name": "White Label Branding",
        "category": FeatureCategory.PREMIUM,
        "is_premium": True,
        "is_add_on": True,
    },
    {
        "code": FeatureCode.API_ACCESS,
        "name": "API Access",
        "category": FeatureCategory.PREMIUM,
        "is_premium": True,
        "is_add_on": True,
    },
]

# Billing cycle -> length of one paid period
BILLING_CYCLE_PERIODS: dict[str, timedelta] = {
    "MONTHLY": timedelta(days=30),
    "QUARTERLY": timedelta(days=90),
    "YEARLY": timedelta(days=365),
}

# Statuses in which the organization keeps using the platform
ALLOWED_SUBSCRIPTION_STATUSES = frozenset({"TRIAL", "ACTIVE", "GRACE_PERIOD"})

INACTIVE_SUBSCRIPTION_MESSAGES: dict[str, str] = {
    "EXPIRED": "Your subscription has expired. Please renew to continue.",
    "SUSPENDED": "Your subscription has been suspended. Please contact support.",
    "CANCELLED": "Your subscription has been cancelled.",
}

DEFAULT_MAINTENANCE_MESSAGE = "System is under maintenance. Please try again later."
SUSPENDED_MAINTENANCE_MESSAGE = "Your subscription has been suspended. Please contact support."
EXPIRED_MAINTENANCE_MESSAGE = (
    "Your subscription has expired. Please renew to continue using the platform."
)

# Audit log organization id for catalog-level events
SYSTEM_ORGANIZATION_ID = "SYSTEM"


class AuditEvent(StrEnum):
    PLAN_CREATED = "PLAN_CREATED"
    PLAN_UPDATED = "PLAN_UPDATED"
    PLAN_FEATURES_SET = "PLAN_FEATURES_SET"
    FEATURE_CREATED = "FEATURE_CREATED"
    FEATURE_UPDATED = "FEATURE_UPDATED"
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_UPGRADED = "SUBSCRIPTION_UPGRADED"
    SUBSCRIPTION_DOWNGRADED = "SUBSCRIPTION_DOWNGRADED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_SUSPENDED = "SUBSCRIPTION_SUSPENDED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    SUBSCRIPTION_GRACE_PERIOD = "SUBSCRIPTION_GRACE_PERIOD"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    FEATURE_ENABLED = "FEATURE_ENABLED"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    FEATURE_LIMIT_SET = "FEATURE_LIMIT_SET"
    ADD_ON_PURCHASED = "ADD_ON_PURCHASED"
    PAYMENT_REQUEST_CREATED = "PAYMENT_REQUEST_CREATED"
    PAYMENT_REQUEST_APPROVED = "PAYMENT_REQUEST_APPROVED"
    PAYMENT_REQUEST_REJECTED = "PAYMENT_REQUEST_REJECTED"
    PAYMENT_REQUEST_PAID = "PAYMENT_REQUEST_PAID"
