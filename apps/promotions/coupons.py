"""
Coupon validation.

``CouponValidator.validate`` resolves a submitted code to a ranked candidate
or an explicit CouponError. Checks run in a fixed order (lookup, status,
expiry, usage caps, minimum order, restrictions, linked promotion rules) so
the customer always sees the first problem. Validation never touches usage
counters; slots are claimed later by the usage ledger.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from apps.common.types import Err, Ok, Result, to_decimal

from .candidates import customer_group_allowed, is_live, promotion_limits
from .catalog import CouponCatalog
from .constants import ActionType, CouponType, EntityKind, RestrictionType, TargetType
from .domain import Action, Candidate, Coupon, LineItem, PricingContext, UsageLimits
from .exceptions import ConfigurationError, CouponError, CouponErrorKind, InvalidRuleError
from .rules import first_failure
from .usage import UsageLedger

logger = logging.getLogger(__name__)

# Restrictions that narrow the cart lines a coupon applies to, in check order
_ITEM_RESTRICTIONS = (
    RestrictionType.PRODUCT_IDS,
    RestrictionType.EXCLUDED_PRODUCT_IDS,
    RestrictionType.CATEGORY_IDS,
    RestrictionType.EXCLUDED_CATEGORY_IDS,
)

_COUPON_ACTIONS = {
    CouponType.PERCENTAGE: ActionType.PERCENTAGE_DISCOUNT,
    CouponType.FIXED_AMOUNT: ActionType.FIXED_AMOUNT_DISCOUNT,
    CouponType.FREE_SHIPPING: ActionType.FREE_SHIPPING,
}


def normalize_code(code: str) -> str:
    """Normalize coupon code to uppercase."""
    return code.upper().strip()


@dataclass(frozen=True)
class ValidatedCoupon:
    coupon: Coupon
    candidate: Candidate
    eligible_item_ids: tuple[str, ...]


# ===============================================================================
# Restriction checks
# ===============================================================================


def _string_set(coupon: Coupon, key: RestrictionType, value: Any) -> frozenset[str]:
    if not isinstance(value, list | tuple | set | frozenset):
        raise InvalidRuleError(f"Coupon restriction {key.value} must be a list, got {value!r}", coupon.id)
    return frozenset(str(v) for v in value)


def _quantity(coupon: Coupon, key: RestrictionType, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidRuleError(f"Coupon restriction {key.value} must be a non-negative integer", coupon.id)
    return value


def _parse_restrictions(coupon: Coupon) -> dict[RestrictionType, Any]:
    parsed: dict[RestrictionType, Any] = {}
    for key, value in coupon.restrictions.items():
        try:
            restriction = RestrictionType(key)
        except ValueError as e:
            raise InvalidRuleError(f"Unknown coupon restriction {key!r}", coupon.id) from e
        if value in (None, [], ""):
            continue
        if restriction in (RestrictionType.MINIMUM_QUANTITY, RestrictionType.MAXIMUM_QUANTITY):
            parsed[restriction] = _quantity(coupon, restriction, value)
        else:
            parsed[restriction] = _string_set(coupon, restriction, value)
    return parsed


def _item_passes(restriction: RestrictionType, values: frozenset[str], item: LineItem) -> bool:
    if restriction is RestrictionType.PRODUCT_IDS:
        return item.product_id in values or item.variant_id in values
    if restriction is RestrictionType.EXCLUDED_PRODUCT_IDS:
        return item.product_id not in values and item.variant_id not in values
    if restriction is RestrictionType.CATEGORY_IDS:
        return bool(item.category_ids & values)
    return not item.category_ids & values


def check_restrictions(coupon: Coupon, context: PricingContext) -> tuple[str | None, tuple[LineItem, ...]]:
    """
    Return (violated restriction or None, cart lines the coupon may discount).

    Raises:
        InvalidRuleError: unknown restriction key or malformed value.
    """
    restrictions = _parse_restrictions(coupon)

    items: Sequence[LineItem] = context.items
    for restriction in _ITEM_RESTRICTIONS:
        if restriction in restrictions:
            items = [item for item in items if _item_passes(restriction, restrictions[restriction], item)]
            if not items:
                return restriction.value, ()

    groups = restrictions.get(RestrictionType.CUSTOMER_GROUPS)
    if groups is not None and not groups & context.customer.group_ids:
        return RestrictionType.CUSTOMER_GROUPS.value, ()
    methods = restrictions.get(RestrictionType.PAYMENT_METHODS)
    if methods is not None and context.payment_method not in methods:
        return RestrictionType.PAYMENT_METHODS.value, ()
    methods = restrictions.get(RestrictionType.SHIPPING_METHODS)
    if methods is not None and context.shipping.method not in methods:
        return RestrictionType.SHIPPING_METHODS.value, ()
    countries = restrictions.get(RestrictionType.COUNTRIES)
    if countries is not None:
        allowed = {country.casefold() for country in countries}
        if not context.shipping.country or context.shipping.country.casefold() not in allowed:
            return RestrictionType.COUNTRIES.value, ()

    quantity = sum(item.quantity for item in items)
    minimum = restrictions.get(RestrictionType.MINIMUM_QUANTITY)
    if minimum is not None and quantity < minimum:
        return RestrictionType.MINIMUM_QUANTITY.value, ()
    maximum = restrictions.get(RestrictionType.MAXIMUM_QUANTITY)
    if maximum is not None and quantity > maximum:
        return RestrictionType.MAXIMUM_QUANTITY.value, ()

    return None, tuple(items)


# ===============================================================================
# Candidate construction
# ===============================================================================


def _smallest_cap(*caps: Decimal | None) -> Decimal | None:
    present = [cap for cap in caps if cap is not None]
    return min(present) if present else None


def _coupon_limits(coupon: Coupon) -> UsageLimits:
    return UsageLimits(
        entity_kind=EntityKind.COUPON,
        entity_id=coupon.id,
        max_usage=coupon.max_usage,
        max_usage_per_customer=(
            1 if coupon.is_one_time_use and coupon.max_usage_per_customer is None else coupon.max_usage_per_customer
        ),
    )


def coupon_candidate(coupon: Coupon, eligible_items: Sequence[LineItem], context: PricingContext) -> Candidate:
    """
    Build the ranked candidate for a validated coupon.

    Raises:
        ConfigurationError: the coupon has both or neither of a linked
            promotion and a standalone discount.
    """
    standalone = coupon.coupon_type is not None
    if standalone == (coupon.promotion is not None):
        raise ConfigurationError("Coupon must have exactly one of a linked promotion or a standalone discount", coupon.id)

    limits: list[UsageLimits] = [_coupon_limits(coupon)]
    eligible_ids = frozenset(item.id for item in eligible_items)
    narrowed = eligible_ids if len(eligible_ids) < len(context.items) else None
    promotion = coupon.promotion
    if promotion is not None:
        if promotion.max_usage is not None or promotion.max_usage_per_customer is not None:
            limits.append(promotion_limits(promotion))
        return Candidate(
            kind=EntityKind.COUPON,
            source_id=coupon.id,
            name=coupon.name or promotion.name,
            priority=promotion.priority,
            is_exclusive=promotion.is_exclusive,
            actions=tuple(sorted(promotion.actions, key=lambda a: (a.sort_order, a.id))),
            limits=tuple(limits),
            max_discount_amount=_smallest_cap(coupon.max_discount_amount, promotion.max_discount_amount),
            created_at=coupon.created_at,
            code=coupon.code,
            eligible_item_ids=narrowed,
        )

    try:
        action_type = _COUPON_ACTIONS[CouponType(coupon.coupon_type)]
    except ValueError as e:
        raise InvalidRuleError(f"Unknown coupon type {coupon.coupon_type!r}", coupon.id) from e
    value: Any = None
    if action_type is not ActionType.FREE_SHIPPING:
        if coupon.discount_value is None:
            raise ConfigurationError(f"{coupon.coupon_type} coupon needs a discount value", coupon.id)
        value = str(to_decimal(coupon.discount_value))

    action = Action(
        id=f"coupon:{coupon.id}",
        action_type=action_type.value,
        value=value,
        target_type=TargetType.CART.value,
    )
    return Candidate(
        kind=EntityKind.COUPON,
        source_id=coupon.id,
        name=coupon.name or coupon.code,
        priority=0,
        is_exclusive=False,
        actions=(action,),
        limits=tuple(limits),
        max_discount_amount=coupon.max_discount_amount,
        created_at=coupon.created_at,
        code=coupon.code,
        eligible_item_ids=narrowed,
    )


# ===============================================================================
# Validator
# ===============================================================================


class CouponValidator:
    """Side-effect free coupon checks against the catalog and usage counters."""

    def __init__(self, catalog: CouponCatalog, ledger: UsageLedger | None = None):
        self.catalog = catalog
        self.ledger = ledger

    def validate(
        self,
        code: str,
        context: PricingContext,
        held: Collection[tuple[str, str]] = frozenset(),
    ) -> Result[ValidatedCoupon, CouponError]:
        """
        Validate a coupon code for the pricing context.

        Returns:
            Ok(ValidatedCoupon) or Err(CouponError) with one of NotFound,
            Inactive, Expired, UsageExceeded, PerCustomerUsageExceeded,
            MinOrderNotMet, RestrictionViolated.

        Raises:
            ConfigurationError: the coupon record itself is malformed.
            UpstreamCollaboratorError: catalog or usage store unavailable.
        """
        normalized = normalize_code(code)
        if not normalized:
            return Err(CouponError(CouponErrorKind.NOT_FOUND, normalized, "Coupon code is empty"))

        coupon = self.catalog.find_coupon_by_code(normalized)
        if coupon is None:
            return Err(CouponError(CouponErrorKind.NOT_FOUND, normalized, "Invalid coupon code"))

        error = self._check(coupon, normalized, context, held)
        if error is not None:
            logger.info(
                "Coupon validation failed: %s - %s",
                normalized,
                error.kind.value,
                extra={"coupon_code": normalized, "error_kind": error.kind.value, "restriction": error.restriction},
            )
            return Err(error)

        violated, eligible_items = check_restrictions(coupon, context)
        if violated is not None:
            return Err(
                CouponError(
                    CouponErrorKind.RESTRICTION_VIOLATED,
                    normalized,
                    f"Coupon restriction not met: {violated}",
                    restriction=violated,
                )
            )

        promotion = coupon.promotion
        if promotion is not None:
            if not customer_group_allowed(promotion, context.customer):
                return Err(
                    CouponError(
                        CouponErrorKind.RESTRICTION_VIOLATED,
                        normalized,
                        "Customer group not eligible",
                        restriction=RestrictionType.CUSTOMER_GROUPS.value,
                    )
                )
            failed = first_failure(promotion.rules, context)
            if failed is not None:
                return Err(
                    CouponError(
                        CouponErrorKind.RESTRICTION_VIOLATED,
                        normalized,
                        f"Promotion conditions not met ({failed.condition_type})",
                        restriction="promotion_rules",
                    )
                )

        candidate = coupon_candidate(coupon, eligible_items, context)
        return Ok(ValidatedCoupon(coupon=coupon, candidate=candidate, eligible_item_ids=tuple(i.id for i in eligible_items)))

    def _check(
        self,
        coupon: Coupon,
        code: str,
        context: PricingContext,
        held: Collection[tuple[str, str]],
    ) -> CouponError | None:
        now = context.now
        promotion = coupon.promotion

        if not coupon.is_active or now < coupon.start_date:
            return CouponError(CouponErrorKind.INACTIVE, code, "Coupon is not active")
        if promotion is not None and (not is_live(promotion) or now < promotion.start_date):
            return CouponError(CouponErrorKind.INACTIVE, code, "Promotion is not active")

        if coupon.end_date is not None and now > coupon.end_date:
            return CouponError(CouponErrorKind.EXPIRED, code, "Coupon has expired")
        if promotion is not None and promotion.end_date is not None and now > promotion.end_date:
            return CouponError(CouponErrorKind.EXPIRED, code, "Promotion has ended")

        coupon_held = (EntityKind.COUPON.value, coupon.id) in held
        if not coupon_held:
            if coupon.max_usage is not None and coupon.usage_count >= coupon.max_usage:
                return CouponError(CouponErrorKind.USAGE_EXCEEDED, code, "Coupon usage limit reached")
            if (
                promotion is not None
                and (EntityKind.PROMOTION.value, promotion.id) not in held
                and promotion.max_usage is not None
                and promotion.usage_count >= promotion.max_usage
            ):
                return CouponError(CouponErrorKind.USAGE_EXCEEDED, code, "Promotion usage limit reached")

            customer_id = context.customer.id
            if customer_id and coupon.max_usage_per_customer is not None and self.ledger is not None:
                used = self.ledger.customer_usage_count(EntityKind.COUPON, coupon.id, customer_id)
                if used >= coupon.max_usage_per_customer:
                    return CouponError(
                        CouponErrorKind.PER_CUSTOMER_USAGE_EXCEEDED, code, "You have already used this coupon"
                    )
            if coupon.is_one_time_use:
                if not customer_id:
                    return CouponError(
                        CouponErrorKind.RESTRICTION_VIOLATED,
                        code,
                        "Sign in to use this coupon",
                        restriction="identified_customer",
                    )
                if self.ledger is not None and self.ledger.has_prior_redemption(code, customer_id):
                    return CouponError(
                        CouponErrorKind.PER_CUSTOMER_USAGE_EXCEEDED, code, "You have already used this coupon"
                    )

        subtotal = context.subtotal
        if coupon.min_order_amount is not None and subtotal < coupon.min_order_amount:
            return CouponError(
                CouponErrorKind.MIN_ORDER_NOT_MET, code, f"Minimum order of {coupon.min_order_amount} required"
            )
        if promotion is not None and promotion.min_order_amount is not None and subtotal < promotion.min_order_amount:
            return CouponError(
                CouponErrorKind.MIN_ORDER_NOT_MET, code, f"Minimum order of {promotion.min_order_amount} required"
            )
        return None
