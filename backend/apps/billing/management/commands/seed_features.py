"""
Seed the default feature catalog.

Idempotent: existing features are left untouched.
"""

from django.core.management.base import BaseCommand

from apps.billing.catalog import seed_default_features


class Command(BaseCommand):
    help = "Create any missing default features"

    def handle(self, *args, **options):
        created = seed_default_features()
        self.stdout.write(self.style.SUCCESS(f"Created {created} features"))
