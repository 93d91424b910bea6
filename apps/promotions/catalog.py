"""
Collaborator interfaces the pricing engine depends on.

The engine only talks to these protocols. ``repositories`` provides the
Django ORM implementations; tests use in-memory ones. Implementations raise
UpstreamCollaboratorError when the backing store is unavailable and
TransientStoreError for short-lived contention on usage counters.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from .constants import EntityKind, ReservationStatus
from .domain import Coupon, CustomerPrice, PricingRule, Promotion, Reservation, TierPrice, UsageLimits


class PromotionCatalog(Protocol):
    """Promotions with their rules and actions"""

    def find_active_promotions(self, scope: str, merchant_id: str | None) -> Sequence[Promotion]:
        """Promotions of ``scope`` for the merchant, plus global ones. Rules and actions included."""
        ...


class CouponCatalog(Protocol):
    def find_coupon_by_code(self, code: str) -> Coupon | None:
        """Case-insensitive lookup; linked promotion included."""
        ...


class PriceCatalog(Protocol):
    """Quantity tiers, customer price lists and dynamic pricing rules"""

    def find_tier_price(
        self, product_id: str, variant_id: str | None, quantity: int, group_ids: Collection[str] = ()
    ) -> TierPrice | None:
        """Greatest breakpoint whose quantity_min does not exceed ``quantity``."""
        ...

    def find_customer_price(
        self, customer_id: str | None, group_ids: Collection[str], product_id: str, variant_id: str | None
    ) -> CustomerPrice | None:
        """Most specific active price list entry for the customer or one of their groups."""
        ...

    def find_active_pricing_rules(self, merchant_id: str | None, now: datetime) -> Sequence[PricingRule]:
        """Active pricing rules of the merchant and merchant-less ones, live at ``now``, conditions included."""
        ...


class UsageStore(Protocol):
    """
    Shared usage counters.

    ``conditional_increment`` must be a single atomic operation: the global and
    per-customer counters are both incremented, or neither is.
    """

    def conditional_increment(self, limits: UsageLimits, customer_id: str | None) -> bool:
        """Increment when below both caps. False means a cap is reached; see ``usage_counts``."""
        ...

    def decrement(self, entity_kind: EntityKind, entity_id: str, customer_id: str | None) -> None: ...

    def usage_counts(self, entity_kind: EntityKind, entity_id: str, customer_id: str | None) -> tuple[int, int]:
        """(global count, this customer's count)"""
        ...

    def has_prior_redemption(self, code: str, customer_id: str) -> bool: ...

    def record_redemption(
        self, reservation: Reservation, order_id: str, code: str | None, discount_amount: Decimal, now: datetime
    ) -> None: ...

    # reservation bookkeeping

    def save_reservation(self, reservation: Reservation) -> None: ...

    def find_reservation(
        self, entity_kind: EntityKind, entity_id: str, cart_id: str, now: datetime
    ) -> Reservation | None:
        """Live (held, unexpired) reservation of the entity for the cart."""
        ...

    def held_entities(self, cart_id: str, now: datetime) -> frozenset[tuple[str, str]]:
        """(entity kind, entity id) pairs the cart holds live reservations on"""
        ...

    def transition_reservation(self, reservation_id: str, to_status: ReservationStatus, now: datetime) -> bool:
        """
        Compare-and-set a held reservation to ``to_status``.

        committed requires an unexpired hold, expired requires a lapsed one,
        released accepts either. Returns False when the guard does not match.
        """
        ...

    def expired_reservations(self, now: datetime) -> Sequence[Reservation]: ...
