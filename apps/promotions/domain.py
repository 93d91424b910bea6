"""
Immutable snapshots the pricing engine works on.

Catalog collaborators translate their storage records into these
dataclasses; the evaluation code never touches ORM models, so it can be
exercised without a database.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from apps.common.types import ZERO, quantize_money

from .constants import (
    DEFAULT_RULE_GROUP,
    EntityKind,
    PromotionScope,
    PromotionStatus,
    RejectionReason,
    ReservationStatus,
    TargetType,
)
from .exceptions import CouponError

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# ===============================================================================
# Pricing context
# ===============================================================================


@dataclass(frozen=True)
class LineItem:
    """One cart line. ``unit_price`` is the catalog base price."""

    id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    variant_id: str | None = None
    sku: str | None = None
    category_ids: frozenset[str] = frozenset()
    brand_id: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    weight: Decimal = ZERO

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class CustomerInfo:
    """Customer identity and history. ``None`` history means no orders on record."""

    id: str | None = None
    group_ids: frozenset[str] = frozenset()
    tags: frozenset[str] = frozenset()
    order_count: int | None = None
    order_total: Decimal | None = None


@dataclass(frozen=True)
class ShippingInfo:
    country: str | None = None
    region: str | None = None
    method: str | None = None
    amount: Decimal = ZERO


@dataclass(frozen=True)
class PricingContext:
    """
    Everything one price evaluation looks at.

    Attributes:
        items: Cart lines in display order.
        now: Evaluation timestamp; all date checks use this, never the wall clock.
        cart_id: Owner key for usage reservations. Repricing the same cart
            reuses the reservations it already holds.
        decimal_places: Currency exponent used for rounding (2 for EUR, 0 for JPY).
    """

    items: tuple[LineItem, ...]
    now: datetime
    merchant_id: str | None = None
    cart_id: str | None = None
    customer: CustomerInfo = field(default_factory=CustomerInfo)
    shipping: ShippingInfo = field(default_factory=ShippingInfo)
    payment_method: str | None = None
    coupon_codes: tuple[str, ...] = ()
    decimal_places: int = 2

    @property
    def subtotal(self) -> Decimal:
        return quantize_money(sum((item.line_total for item in self.items), ZERO), self.decimal_places)

    @property
    def total(self) -> Decimal:
        """Subtotal plus shipping, before any discount"""
        return self.subtotal + self.shipping.amount

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)


# ===============================================================================
# Promotion catalog records
# ===============================================================================


@dataclass(frozen=True)
class Rule:
    id: str
    condition_type: str
    operator: str
    value: Any
    is_required: bool = True
    rule_group: str = DEFAULT_RULE_GROUP
    sort_order: int = 0
    name: str = ""


@dataclass(frozen=True)
class Action:
    id: str
    action_type: str
    value: Any
    target_type: str = TargetType.CART.value
    target_ids: frozenset[str] = frozenset()
    sort_order: int = 0


@dataclass(frozen=True)
class Promotion:
    id: str
    name: str
    scope: str = PromotionScope.CART.value
    status: str = PromotionStatus.ACTIVE.value
    is_active: bool = True
    priority: int = 0
    is_exclusive: bool = False
    requires_coupon: bool = False
    start_date: datetime = EPOCH
    end_date: datetime | None = None
    max_usage: int | None = None
    usage_count: int = 0
    max_usage_per_customer: int | None = None
    min_order_amount: Decimal | None = None
    max_discount_amount: Decimal | None = None
    eligible_customer_groups: frozenset[str] = frozenset()
    excluded_customer_groups: frozenset[str] = frozenset()
    merchant_id: str | None = None
    is_global: bool = False
    rules: tuple[Rule, ...] = ()
    actions: tuple[Action, ...] = ()
    created_at: datetime = EPOCH


@dataclass(frozen=True)
class Coupon:
    """
    Coupon record. Exactly one of ``promotion`` or ``coupon_type`` (with
    ``discount_value``) drives the discount.
    """

    id: str
    code: str
    name: str = ""
    promotion: Promotion | None = None
    coupon_type: str | None = None
    discount_value: Decimal | None = None
    min_order_amount: Decimal | None = None
    max_discount_amount: Decimal | None = None
    start_date: datetime = EPOCH
    end_date: datetime | None = None
    is_active: bool = True
    is_one_time_use: bool = False
    max_usage: int | None = None
    usage_count: int = 0
    max_usage_per_customer: int | None = None
    restrictions: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = EPOCH


# ===============================================================================
# Price lists
# ===============================================================================


@dataclass(frozen=True)
class TierPrice:
    id: str
    product_id: str
    quantity_min: int
    price: Decimal
    variant_id: str | None = None


@dataclass(frozen=True)
class CustomerPrice:
    """Customer/group price list entry; ``adjustment`` is a PriceAdjustment value."""

    id: str
    product_id: str
    adjustment: str
    value: Decimal
    variant_id: str | None = None
    price_list_id: str | None = None


@dataclass(frozen=True)
class RuleAdjustment:
    """One price change of a pricing rule; ``type`` is a PriceAdjustment value."""

    type: str
    value: Decimal


@dataclass(frozen=True)
class PricingRule:
    """
    Dynamic unit price rule, applied after tier and customer prices.

    ``scope`` (a PricingRuleScope value) selects which id list must match the
    line or customer. ``conditions`` are rule groups over the whole cart, as
    on promotions. Quantity bounds apply to the line being priced and the
    minimum order amount to the cart subtotal at list prices.
    """

    id: str
    name: str
    scope: str
    adjustments: tuple[RuleAdjustment, ...]
    priority: int = 0
    conditions: tuple[Rule, ...] = ()
    product_ids: frozenset[str] = frozenset()
    category_ids: frozenset[str] = frozenset()
    customer_ids: frozenset[str] = frozenset()
    customer_group_ids: frozenset[str] = frozenset()
    start_date: datetime | None = None
    end_date: datetime | None = None
    minimum_quantity: int | None = None
    maximum_quantity: int | None = None
    minimum_order_amount: Decimal | None = None
    created_at: datetime = EPOCH


# ===============================================================================
# Usage
# ===============================================================================


@dataclass(frozen=True)
class UsageLimits:
    """Caps to enforce when reserving one promotion or coupon use."""

    entity_kind: EntityKind
    entity_id: str
    max_usage: int | None = None
    max_usage_per_customer: int | None = None


@dataclass(frozen=True)
class Reservation:
    id: str
    entity_kind: EntityKind
    entity_id: str
    customer_id: str | None
    cart_id: str | None
    expires_at: datetime
    status: ReservationStatus = ReservationStatus.HELD


# ===============================================================================
# Ranked candidates
# ===============================================================================


@dataclass(frozen=True)
class Candidate:
    """
    A promotion or validated coupon competing for a place in the priced result.

    Coupons linked to a promotion carry that promotion's actions and priority;
    standalone coupons carry a single synthesized action. A coupon whose
    restrictions exclude some lines sets ``eligible_item_ids``; its actions
    only reach those lines. ``None`` means no restriction.
    """

    kind: EntityKind
    source_id: str
    name: str
    priority: int
    is_exclusive: bool
    actions: tuple[Action, ...]
    limits: tuple[UsageLimits, ...]
    max_discount_amount: Decimal | None = None
    created_at: datetime = EPOCH
    code: str | None = None
    eligible_item_ids: frozenset[str] | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind.value, self.source_id)


# ===============================================================================
# Priced result
# ===============================================================================


@dataclass(frozen=True)
class IneligibleCandidate:
    """A promotion or coupon excluded from the result, with the reason."""

    kind: EntityKind
    source_id: str
    reason: RejectionReason
    detail: str = ""
    code: str | None = None


@dataclass(frozen=True)
class FreeItem:
    product_id: str
    quantity: int
    source_id: str
    variant_id: str | None = None


@dataclass(frozen=True)
class AppliedAdjustment:
    """
    One promotion or coupon that contributed to the result.

    ``amount`` is the monetary discount it produced (line plus cart level,
    shipping excluded); ``shipping_discount`` is filled in when its free
    shipping flag zeroed the shipping charge.
    """

    kind: EntityKind
    source_id: str
    name: str
    amount: Decimal
    cart_discount: Decimal
    line_discounts: Mapping[str, Decimal]
    affected_item_ids: tuple[str, ...]
    code: str | None = None
    free_shipping: bool = False
    shipping_discount: Decimal = ZERO
    free_items: tuple[FreeItem, ...] = ()
    points: int = 0


@dataclass(frozen=True)
class LineDiscount:
    kind: EntityKind
    source_id: str
    amount: Decimal


@dataclass(frozen=True)
class PricedLine:
    item_id: str
    product_id: str
    quantity: int
    base_unit_price: Decimal
    unit_price: Decimal
    price_source: str  # "base", "tier", "customer_price" or "pricing_rule"
    price_source_id: str | None
    discounts: tuple[LineDiscount, ...]
    final_total: Decimal
    pricing_rule_ids: tuple[str, ...] = ()

    @property
    def base_total(self) -> Decimal:
        return self.base_unit_price * self.quantity


@dataclass(frozen=True)
class PricedResult:
    lines: tuple[PricedLine, ...]
    applied: tuple[AppliedAdjustment, ...]
    rejected: tuple[IneligibleCandidate, ...]
    coupon_errors: tuple[CouponError, ...]
    subtotal: Decimal
    line_discount_total: Decimal
    cart_discount: Decimal
    shipping_amount: Decimal
    shipping_discount: Decimal
    total: Decimal
    free_items: tuple[FreeItem, ...] = ()
    points: int = 0
    reservations: tuple[Reservation, ...] = ()

    @property
    def discount_total(self) -> Decimal:
        return self.line_discount_total + self.cart_discount + self.shipping_discount
