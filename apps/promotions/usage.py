"""
Usage ledger for promotion and coupon caps.

Usage counters are the only state the pricing engine shares between
requests. A use is *reserved* once the pipeline knows which candidates it
will apply (one atomic conditional increment in the store), then either
*committed* when the order is placed or *released* when the cart is
abandoned. Holds that are never resolved lapse after
``PRICING_RESERVATION_TTL_SECONDS`` and are returned to the pool by the
``release_expired_reservations`` management command.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TypeVar

from django.conf import settings
from django.utils import timezone

from apps.common.types import ZERO

from .catalog import UsageStore
from .constants import EntityKind, ReservationStatus
from .domain import Reservation, UsageLimits
from .exceptions import TransientStoreError, UpstreamCollaboratorError, UsageReservationFailed

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RESERVATION_TTL_SECONDS = 900
DEFAULT_RESERVE_MAX_ATTEMPTS = 3


class UsageLedger:
    """Reserve, commit and release promotion/coupon uses against a UsageStore."""

    def __init__(self, store: UsageStore, ttl_seconds: int | None = None, max_attempts: int | None = None):
        self.store = store
        if ttl_seconds is None:
            ttl_seconds = getattr(settings, "PRICING_RESERVATION_TTL_SECONDS", DEFAULT_RESERVATION_TTL_SECONDS)
        if max_attempts is None:
            max_attempts = getattr(settings, "PRICING_RESERVE_MAX_ATTEMPTS", DEFAULT_RESERVE_MAX_ATTEMPTS)
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_attempts = max(1, max_attempts)

    # ===============================================================================
    # Retry on contention
    # ===============================================================================

    def _with_retry(self, operation: Callable[[], T], description: str) -> T:
        last_error: TransientStoreError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation()
            except TransientStoreError as e:
                last_error = e
                logger.warning(
                    "Usage store contention on %s (attempt %d/%d): %s",
                    description,
                    attempt,
                    self.max_attempts,
                    e,
                    extra={"operation": description, "attempt": attempt},
                )
        raise UpstreamCollaboratorError(
            f"Usage store still contended after {self.max_attempts} attempts: {description}"
        ) from last_error

    # ===============================================================================
    # Reservations
    # ===============================================================================

    def reserve(self, limits: UsageLimits, customer_id: str | None, cart_id: str | None, now: datetime) -> Reservation:
        """
        Claim one use of a promotion or coupon.

        A cart that already holds a live reservation on the entity gets that
        reservation back, so repricing the same cart never consumes a second slot.

        Raises:
            UsageReservationFailed: the global or per-customer cap is reached.
            UpstreamCollaboratorError: the store stayed contended or is unavailable.
        """
        kind, entity_id = limits.entity_kind, limits.entity_id
        description = f"{kind.value}:{entity_id}"
        if cart_id:
            existing = self._with_retry(
                lambda: self.store.find_reservation(kind, entity_id, cart_id, now), f"find {description}"
            )
            if existing is not None:
                return existing

        acquired = self._with_retry(
            lambda: self.store.conditional_increment(limits, customer_id), f"reserve {description}"
        )
        if not acquired:
            total, customer_count = self.store.usage_counts(kind, entity_id, customer_id)
            global_full = limits.max_usage is not None and total >= limits.max_usage
            per_customer = not global_full and limits.max_usage_per_customer is not None
            logger.info(
                "Usage cap reached for %s %s (%s)",
                kind.value,
                entity_id,
                "per-customer" if per_customer else "global",
                extra={"entity_id": entity_id, "usage_count": total, "customer_usage_count": customer_count},
            )
            raise UsageReservationFailed(kind, entity_id, per_customer=per_customer)

        reservation = Reservation(
            id=uuid.uuid4().hex,
            entity_kind=kind,
            entity_id=entity_id,
            customer_id=customer_id,
            cart_id=cart_id,
            expires_at=now + self.ttl,
        )
        try:
            self._with_retry(lambda: self.store.save_reservation(reservation), f"save {description}")
        except UpstreamCollaboratorError:
            self.store.decrement(kind, entity_id, customer_id)
            raise
        logger.debug("Reserved %s for cart %s until %s", description, cart_id, reservation.expires_at)
        return reservation

    def reserve_all(
        self, limits: Sequence[UsageLimits], customer_id: str | None, cart_id: str | None, now: datetime
    ) -> list[Reservation]:
        """Reserve every limit or none of them (new holds are released on failure)."""
        acquired: list[Reservation] = []
        held_before = self.held_entities(cart_id, now)
        try:
            for limit in limits:
                acquired.append(self.reserve(limit, customer_id, cart_id, now))
        except (UsageReservationFailed, UpstreamCollaboratorError):
            self.release_many(r for r in acquired if (r.entity_kind.value, r.entity_id) not in held_before)
            raise
        return acquired

    def commit(
        self,
        reservation: Reservation,
        order_id: str,
        now: datetime,
        code: str | None = None,
        discount_amount: Decimal = ZERO,
    ) -> bool:
        """
        Turn a held reservation into a redemption.

        Returns False when the reservation was already resolved or has lapsed;
        the caller must reprice in that case.
        """
        committed = self._with_retry(
            lambda: self.store.transition_reservation(reservation.id, ReservationStatus.COMMITTED, now),
            f"commit {reservation.id}",
        )
        if not committed:
            logger.warning(
                "Reservation %s for %s %s could not be committed (released or expired)",
                reservation.id,
                reservation.entity_kind.value,
                reservation.entity_id,
                extra={"reservation_id": reservation.id, "order_id": order_id},
            )
            return False
        self.store.record_redemption(reservation, order_id, code, discount_amount, now)
        logger.info(
            "Committed %s %s for order %s",
            reservation.entity_kind.value,
            reservation.entity_id,
            order_id,
            extra={"reservation_id": reservation.id, "order_id": order_id, "discount_amount": str(discount_amount)},
        )
        return True

    def release(self, reservation: Reservation, now: datetime | None = None) -> bool:
        """Give a held use back. Releasing twice is a no-op."""
        at = now or timezone.now()
        released = self._with_retry(
            lambda: self.store.transition_reservation(reservation.id, ReservationStatus.RELEASED, at),
            f"release {reservation.id}",
        )
        if released:
            self.store.decrement(reservation.entity_kind, reservation.entity_id, reservation.customer_id)
            logger.debug("Released reservation %s", reservation.id)
        return released

    def release_many(self, reservations: Iterable[Reservation]) -> int:
        return sum(1 for reservation in reservations if self.release(reservation))

    def release_expired(self, now: datetime) -> int:
        """Return lapsed holds to the pool. Safe to run concurrently with commits."""
        count = 0
        for reservation in self.store.expired_reservations(now):
            if self.store.transition_reservation(reservation.id, ReservationStatus.EXPIRED, now):
                self.store.decrement(reservation.entity_kind, reservation.entity_id, reservation.customer_id)
                count += 1
        if count:
            logger.info("Expired %d stale usage reservations", count, extra={"expired_count": count})
        return count

    # ===============================================================================
    # Read-only lookups
    # ===============================================================================

    def customer_usage_count(self, entity_kind: EntityKind, entity_id: str, customer_id: str | None) -> int:
        if not customer_id:
            return 0
        _, count = self._with_retry(
            lambda: self.store.usage_counts(entity_kind, entity_id, customer_id),
            f"usage {entity_kind.value}:{entity_id}",
        )
        return count

    def has_prior_redemption(self, code: str, customer_id: str) -> bool:
        return self._with_retry(
            lambda: self.store.has_prior_redemption(code, customer_id), f"prior redemption {code}"
        )

    def held_entities(self, cart_id: str | None, now: datetime) -> frozenset[tuple[str, str]]:
        if not cart_id:
            return frozenset()
        return self._with_retry(lambda: self.store.held_entities(cart_id, now), f"held entities {cart_id}")

    def find_held(self, kind_and_id: tuple[str, str], cart_id: str, now: datetime) -> Reservation | None:
        kind, entity_id = kind_and_id
        return self.store.find_reservation(EntityKind(kind), entity_id, cart_id, now)
