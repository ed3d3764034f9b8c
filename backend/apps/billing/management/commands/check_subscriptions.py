"""
Subscription sweep management command.

Moves lapsed subscriptions into GRACE_PERIOD or EXPIRED and writes EXPIRED
back onto stale payment requests. Designed to run as a scheduled job
(e.g., daily cron); overlapping runs are safe.
"""

from uuid import uuid4

from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.billing.payment_requests import expire_stale_payment_requests
from apps.billing.sweeper import run_subscription_sweep
from apps.core.logging import bind_contextvars, clear_contextvars, get_logger

logger = get_logger(__name__)


class Command(BaseCommand):
    help = "Advance expired subscriptions to grace period / expired"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report what would change without writing anything",
        )

    def handle(self, *args, **options):
        dry_run = options["dry_run"]
        now = timezone.now()

        clear_contextvars()
        bind_contextvars(correlation_id=str(uuid4()), job="check_subscriptions")
        try:
            logger.info("subscription_check_started", now=now.isoformat(), dry_run=dry_run)

            result = run_subscription_sweep(now, dry_run=dry_run)
            expired_requests = 0 if dry_run else expire_stale_payment_requests(now)

            logger.info(
                "subscription_check_completed",
                processed=result.processed,
                grace_period=result.grace_period,
                expired=result.expired,
                errors=len(result.errors),
                expired_payment_requests=expired_requests,
                dry_run=dry_run,
            )
        finally:
            clear_contextvars()

        summary = (
            f"{result.processed} processed, {result.grace_period} moved to grace period, "
            f"{result.expired} expired"
        )
        if dry_run:
            self.stdout.write(f"DRY RUN: {summary}")
        else:
            self.stdout.write(
                self.style.SUCCESS(f"{summary}, {expired_requests} payment requests expired")
            )

        for error in result.errors:
            self.stderr.write(
                f"Subscription {error['subscription_id']} "
                f"(organization {error['organization_id']}): {error['error']}"
            )
