"""
Management command to return lapsed usage reservations to the pool.

Carts that were priced but never checked out keep their promotion and coupon
slots until the reservation expires. Run this periodically (cron) so those
slots become available again.
"""

import logging
from typing import Any

from django.core.management.base import BaseCommand, CommandParser
from django.utils import timezone

from apps.promotions.constants import ReservationStatus
from apps.promotions.models import UsageReservation
from apps.promotions.repositories import OrmUsageStore
from apps.promotions.usage import UsageLedger

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Release expired usage reservations."""

    help = "Expire lapsed promotion/coupon usage reservations and give their slots back"

    def add_arguments(self, parser: CommandParser) -> None:
        """Add command arguments."""
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show how many reservations would expire without changing them",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        """Execute the command."""
        now = timezone.now()

        if options["dry_run"]:
            pending = UsageReservation.objects.filter(
                status=ReservationStatus.HELD.value, expires_at__lte=now
            ).count()
            self.stdout.write(f"DRY RUN: {pending} reservations would expire")
            return

        expired = UsageLedger(OrmUsageStore()).release_expired(now)
        self.stdout.write(self.style.SUCCESS(f"Released {expired} expired reservations"))
