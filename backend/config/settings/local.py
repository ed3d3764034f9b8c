"""
Local development settings.

Extends base settings with development-friendly defaults.
"""

from .base import *  # noqa: F403
from .base import settings

DEBUG = True
ALLOWED_HOSTS = ["localhost", "127.0.0.1"]

# Pretty console logs in development
LOG_JSON = False
LOG_LEVEL = settings.LOG_LEVEL

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "alumni-billing-local",
    }
}
