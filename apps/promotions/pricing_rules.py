"""
Dynamic pricing rules.

Rules run after the tier and customer price has been chosen, highest
priority first (then oldest first). Each rule whose scope, window, quantity
bounds and conditions hold applies its adjustments in order to the running
unit price. The resulting price never drops below zero nor rises above the
line's base price.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from decimal import Decimal

from apps.common.types import HUNDRED, ZERO, quantize_money

from .constants import PriceAdjustment, PricingRuleScope
from .domain import LineItem, PricingContext, PricingRule, RuleAdjustment
from .exceptions import InvalidRuleError
from .rules import is_eligible

logger = logging.getLogger(__name__)


def _scope(rule: PricingRule) -> PricingRuleScope:
    try:
        return PricingRuleScope(rule.scope)
    except ValueError as e:
        raise InvalidRuleError(f"Unknown pricing rule scope {rule.scope!r}", rule.id) from e


def _in_scope(rule: PricingRule, item: LineItem, context: PricingContext) -> bool:
    scope = _scope(rule)
    if scope is PricingRuleScope.GLOBAL:
        return True
    if scope is PricingRuleScope.PRODUCT:
        return item.product_id in rule.product_ids or item.variant_id in rule.product_ids
    if scope is PricingRuleScope.CATEGORY:
        return bool(item.category_ids & rule.category_ids)
    if scope is PricingRuleScope.CUSTOMER:
        return context.customer.id is not None and context.customer.id in rule.customer_ids
    return bool(context.customer.group_ids & rule.customer_group_ids)


def rule_applies(rule: PricingRule, item: LineItem, context: PricingContext) -> bool:
    """True when ``rule`` reaches ``item`` in this cart."""
    now = context.now
    if rule.start_date is not None and now < rule.start_date:
        return False
    if rule.end_date is not None and now > rule.end_date:
        return False
    if not _in_scope(rule, item, context):
        return False
    if rule.minimum_quantity is not None and item.quantity < rule.minimum_quantity:
        return False
    if rule.maximum_quantity is not None and item.quantity > rule.maximum_quantity:
        return False
    if rule.minimum_order_amount is not None and context.subtotal < rule.minimum_order_amount:
        return False
    return is_eligible(rule.conditions, context)


def _adjusted(rule: PricingRule, adjustment: RuleAdjustment, price: Decimal, base_price: Decimal) -> Decimal:
    try:
        kind = PriceAdjustment(adjustment.type)
    except ValueError as e:
        raise InvalidRuleError(f"Unknown price adjustment {adjustment.type!r}", rule.id) from e
    if adjustment.value < ZERO:
        raise InvalidRuleError(f"Negative price adjustment {adjustment.value}", rule.id)
    if kind is PriceAdjustment.FIXED:
        return min(price, adjustment.value)
    if kind is PriceAdjustment.OVERRIDE:
        return min(adjustment.value, base_price)
    if adjustment.value > HUNDRED:
        raise InvalidRuleError(f"Pricing rule percentage out of range: {adjustment.value}", rule.id)
    return price * (HUNDRED - adjustment.value) / HUNDRED


def ordered(rules: Iterable[PricingRule]) -> list[PricingRule]:
    return sorted(rules, key=lambda r: (-r.priority, r.created_at, r.id))


def apply_pricing_rules(
    rules: Sequence[PricingRule],
    item: LineItem,
    base_price: Decimal,
    unit_price: Decimal,
    context: PricingContext,
) -> tuple[Decimal, tuple[str, ...]]:
    """
    Run the pricing rules over one line's unit price.

    Args:
        rules: Candidate rules, already in application order (see ``ordered``).
        item: The line being priced, quantity included.
        base_price: List price of the line; never exceeded.
        unit_price: Price after tier and customer price resolution.
        context: The cart the conditions are evaluated against.

    Returns:
        (unit price, ids of the rules that changed it)

    Raises:
        InvalidRuleError: unknown scope or adjustment type, or an out of range value.
    """
    price = unit_price
    applied: list[str] = []
    for rule in rules:
        if not rule.adjustments or not rule_applies(rule, item, context):
            continue
        before = price
        for adjustment in rule.adjustments:
            price = _adjusted(rule, adjustment, price, base_price)
        price = min(max(quantize_money(price, context.decimal_places), ZERO), base_price)
        if price != before:
            applied.append(rule.id)
            logger.debug("Pricing rule %s moved %s from %s to %s", rule.id, item.id, before, price)
    return price, tuple(applied)
