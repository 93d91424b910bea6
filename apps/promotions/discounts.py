"""
Discount calculation for promotion actions.

``apply(action, target_items, running, cap)`` computes what one action is
worth against the running (already discounted) totals without changing them;
the pipeline records the result with ``RunningTotals.record`` before moving to
the next action. Every monetary amount is rounded to the currency minor unit
with ROUND_HALF_EVEN and never exceeds what is left on the targeted lines.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from apps.common.types import HUNDRED, ZERO, quantize_money, to_decimal

from .constants import ActionType, TargetType
from .domain import Action, FreeItem, LineItem
from .exceptions import InvalidRuleError

logger = logging.getLogger(__name__)


# ===============================================================================
# Running totals
# ===============================================================================


class RunningTotals:
    """
    Post-discount state of a cart while candidates are being applied.

    Line totals only ever go down. Cart-level discounts are tracked apart
    from the lines and can never exceed the sum of the line totals.
    """

    def __init__(self, items: Sequence[LineItem], shipping_amount: Decimal = ZERO, decimal_places: int = 2):
        self.decimal_places = decimal_places
        self.items = {item.id: item for item in items}
        self.line_totals = {item.id: quantize_money(item.line_total, decimal_places) for item in items}
        self.claimed_units = {item.id: 0 for item in items}
        self.cart_discount = ZERO
        self.shipping_amount = shipping_amount
        self.free_shipping = False

    @property
    def lines_total(self) -> Decimal:
        return sum(self.line_totals.values(), ZERO)

    @property
    def cart_total(self) -> Decimal:
        """Goods total after line and cart-level discounts, shipping excluded"""
        return self.lines_total - self.cart_discount

    def unit_price(self, item_id: str) -> Decimal:
        quantity = self.items[item_id].quantity
        return self.line_totals[item_id] / quantity if quantity else ZERO

    def available_units(self, item_id: str) -> int:
        return self.items[item_id].quantity - self.claimed_units[item_id]

    def record(self, result: DiscountResult) -> None:
        for item_id, amount in result.line_discounts.items():
            self.line_totals[item_id] -= amount
        for item_id, units in result.claimed_units.items():
            self.claimed_units[item_id] += units
        self.cart_discount += result.cart_discount
        if result.free_shipping:
            self.free_shipping = True


@dataclass
class DiscountResult:
    """
    What one action produced.

    Attributes:
        amount: Total monetary discount (line plus cart level).
        line_discounts: Discount per line item id.
        cart_discount: Part of the amount taken off the cart total rather than a line.
        affected_item_ids: Lines the action touched, in cart order.
        claimed_units: Units consumed by buy-X-get-Y deals, unavailable to later deals.
    """

    amount: Decimal = ZERO
    line_discounts: dict[str, Decimal] = field(default_factory=dict)
    cart_discount: Decimal = ZERO
    affected_item_ids: tuple[str, ...] = ()
    claimed_units: dict[str, int] = field(default_factory=dict)
    free_shipping: bool = False
    free_items: tuple[FreeItem, ...] = ()
    points: int = 0

    @property
    def has_effect(self) -> bool:
        return self.amount > ZERO or self.free_shipping or bool(self.free_items) or self.points > 0


# ===============================================================================
# Helpers
# ===============================================================================


def _capped(amount: Decimal, cap: Decimal | None) -> Decimal:
    if cap is not None and amount > cap:
        return max(cap, ZERO)
    return amount


def allocate(amount: Decimal, weights: Sequence[tuple[str, Decimal]], decimal_places: int) -> dict[str, Decimal]:
    """
    Split ``amount`` across lines in proportion to their weights.

    Shares are rounded half-even, the rounding remainder goes to the last
    line, and no line receives more than its own weight.
    """
    total_weight = sum((weight for _, weight in weights), ZERO)
    if amount <= ZERO or total_weight <= ZERO:
        return {}
    amount = min(amount, total_weight)

    shares: dict[str, Decimal] = {}
    remaining = amount
    for index, (item_id, weight) in enumerate(weights):
        if index == len(weights) - 1:
            share = min(remaining, weight)
        else:
            share = min(quantize_money(amount * weight / total_weight, decimal_places), weight, remaining)
        shares[item_id] = share
        remaining -= share

    # rounding left something over: spread it on lines that still have room
    for item_id, weight in reversed(weights):
        if remaining <= ZERO:
            break
        room = weight - shares[item_id]
        extra = min(room, remaining)
        shares[item_id] += extra
        remaining -= extra

    return {item_id: share for item_id, share in shares.items() if share > ZERO}


def _parse_type(action: Action) -> ActionType:
    try:
        return ActionType(action.action_type)
    except ValueError as e:
        raise InvalidRuleError(f"Unknown action type {action.action_type!r}", action.id) from e


def _field(action: Action, key: str) -> Any:
    """Read ``key`` from a dict value; a bare number stands for the primary field."""
    value = action.value
    if isinstance(value, dict):
        if key not in value:
            raise InvalidRuleError(f"{action.action_type} value is missing {key!r}", action.id)
        return value[key]
    if value is None:
        raise InvalidRuleError(f"{action.action_type} needs a value", action.id)
    return value


def _target_type(action: Action) -> TargetType:
    try:
        return TargetType(action.target_type)
    except ValueError as e:
        raise InvalidRuleError(f"Unknown target type {action.target_type!r}", action.id) from e


def _amount(action: Action, raw: Any, minimum: Decimal = ZERO, maximum: Decimal | None = None) -> Decimal:
    try:
        value = to_decimal(raw)
    except ValueError as e:
        raise InvalidRuleError(f"{action.action_type} expects a number, got {raw!r}", action.id) from e
    if value < minimum or (maximum is not None and value > maximum):
        raise InvalidRuleError(f"{action.action_type} value out of range: {raw!r}", action.id)
    return value


def _count(action: Action, key: str, default: int | None = None) -> int | None:
    raw = action.value.get(key, default) if isinstance(action.value, dict) else default
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise InvalidRuleError(f"{action.action_type} {key!r} must be a non-negative integer", action.id)
    return raw


def _ids(items: Iterable[LineItem]) -> tuple[str, ...]:
    return tuple(item.id for item in items)


# ===============================================================================
# Target selection
# ===============================================================================


def select_targets(
    action: Action, items: Sequence[LineItem], eligible_item_ids: Collection[str] | None = None
) -> tuple[LineItem, ...]:
    """
    Line items an action applies to, in cart order.

    ``eligible_item_ids`` restricts the result to those lines, as a coupon
    with product or category restrictions does.
    """
    target_type = _target_type(action)
    if target_type is not TargetType.CART and not action.target_ids:
        raise InvalidRuleError(f"{target_type.value} target needs target ids", action.id)
    if eligible_item_ids is not None:
        items = [item for item in items if item.id in eligible_item_ids]
    if target_type is TargetType.CART:
        return tuple(items)
    if target_type is TargetType.PRODUCT:
        return tuple(
            item for item in items if item.product_id in action.target_ids or item.variant_id in action.target_ids
        )
    return tuple(item for item in items if item.category_ids & action.target_ids)


def _cart_wide(action: Action, targets: Sequence[LineItem], running: RunningTotals) -> bool:
    """Cart targets covering every line come off the cart total; narrowed ones off their lines."""
    return _target_type(action) is TargetType.CART and len(targets) == len(running.items)


# ===============================================================================
# Action handlers
# ===============================================================================


def _line_level(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, amount: Decimal
) -> DiscountResult:
    weights = [(item.id, running.line_totals[item.id]) for item in targets]
    shares = allocate(amount, weights, running.decimal_places)
    return DiscountResult(
        amount=sum(shares.values(), ZERO),
        line_discounts=shares,
        affected_item_ids=tuple(item_id for item_id, _ in weights if item_id in shares),
    )


def _cart_level(targets: Sequence[LineItem], running: RunningTotals, amount: Decimal) -> DiscountResult:
    amount = min(amount, max(running.cart_total, ZERO))
    if amount <= ZERO:
        return DiscountResult()
    return DiscountResult(amount=amount, cart_discount=amount, affected_item_ids=_ids(targets))


def _percentage_discount(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, cap: Decimal | None
) -> DiscountResult:
    percent = _amount(action, _field(action, "percentage"), maximum=HUNDRED)
    if _cart_wide(action, targets, running):
        base = running.cart_total
        amount = _capped(quantize_money(base * percent / HUNDRED, running.decimal_places), cap)
        return _cart_level(targets, running, amount)
    base = sum((running.line_totals[item.id] for item in targets), ZERO)
    amount = _capped(quantize_money(base * percent / HUNDRED, running.decimal_places), cap)
    return _line_level(action, targets, running, amount)


def _fixed_amount_discount(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, cap: Decimal | None
) -> DiscountResult:
    amount = _amount(action, _field(action, "amount"))
    if isinstance(action.value, dict) and action.value.get("per_unit"):
        amount *= sum(item.quantity for item in targets)
    amount = _capped(quantize_money(amount, running.decimal_places), cap)
    if _cart_wide(action, targets, running):
        return _cart_level(targets, running, amount)
    return _line_level(action, targets, running, amount)


def _fixed_price(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, cap: Decimal | None
) -> DiscountResult:
    price = _amount(action, _field(action, "price"))
    reductions: list[tuple[str, Decimal]] = []
    for item in targets:
        new_total = quantize_money(price * item.quantity, running.decimal_places)
        reduction = running.line_totals[item.id] - new_total
        if reduction > ZERO:
            reductions.append((item.id, reduction))
    total = sum((reduction for _, reduction in reductions), ZERO)
    if cap is not None and total > cap:
        shares = allocate(_capped(total, cap), reductions, running.decimal_places)
    else:
        shares = dict(reductions)
    return DiscountResult(
        amount=sum(shares.values(), ZERO),
        line_discounts=shares,
        affected_item_ids=tuple(item_id for item_id, _ in reductions if item_id in shares),
    )


def _buy_x_get_y(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, cap: Decimal | None, percent: Decimal
) -> DiscountResult:
    buy = _count(action, "buy")
    get = _count(action, "get")
    if not buy or not get:
        raise InvalidRuleError(f"{action.action_type} needs positive 'buy' and 'get' counts", action.id)
    max_applications = _count(action, "max_applications")

    units: list[tuple[Decimal, str]] = []
    for item in targets:
        unit_price = running.unit_price(item.id)
        units.extend((unit_price, item.id) for _ in range(running.available_units(item.id)))
    units.sort()

    groups = len(units) // (buy + get)
    if max_applications is not None:
        groups = min(groups, max_applications)
    if groups == 0:
        return DiscountResult()

    # cheapest units are discounted, the most expensive remaining ones paid for
    discounted = units[: groups * get]
    remaining = units[groups * get :]
    paid = remaining[len(remaining) - groups * buy :]

    reductions: dict[str, Decimal] = {}
    claimed: dict[str, int] = {}
    for unit_price, item_id in discounted:
        unit_discount = quantize_money(unit_price * percent / HUNDRED, running.decimal_places)
        reductions[item_id] = reductions.get(item_id, ZERO) + unit_discount
        claimed[item_id] = claimed.get(item_id, 0) + 1
    for _, item_id in paid:
        claimed[item_id] = claimed.get(item_id, 0) + 1

    weights = [(item_id, min(amount, running.line_totals[item_id])) for item_id, amount in reductions.items()]
    weights = [(item_id, amount) for item_id, amount in weights if amount > ZERO]
    total = sum((amount for _, amount in weights), ZERO)
    shares = allocate(_capped(total, cap), weights, running.decimal_places) if cap is not None else dict(weights)
    return DiscountResult(
        amount=sum(shares.values(), ZERO),
        line_discounts=shares,
        affected_item_ids=tuple(item.id for item in targets if item.id in claimed),
        claimed_units=claimed,
    )


def _buy_x_get_y_free(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, cap: Decimal | None
) -> DiscountResult:
    return _buy_x_get_y(action, targets, running, cap, HUNDRED)


def _buy_x_get_y_discount(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, cap: Decimal | None
) -> DiscountResult:
    if not isinstance(action.value, dict) or "percentage" not in action.value:
        raise InvalidRuleError("buy_x_get_y_discount value is missing 'percentage'", action.id)
    percent = _amount(action, action.value["percentage"], maximum=HUNDRED)
    return _buy_x_get_y(action, targets, running, cap, percent)


def _free_shipping(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, cap: Decimal | None
) -> DiscountResult:
    if running.free_shipping or running.shipping_amount <= ZERO:
        return DiscountResult()
    return DiscountResult(free_shipping=True)


def _free_item(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, cap: Decimal | None
) -> DiscountResult:
    if not isinstance(action.value, dict) or not action.value.get("product_id"):
        raise InvalidRuleError("free_item value needs a 'product_id'", action.id)
    quantity = _count(action, "quantity", 1) or 0
    available = _count(action, "available_quantity")
    if available is not None:
        quantity = min(quantity, available)
    if quantity <= 0:
        return DiscountResult()
    item = FreeItem(
        product_id=str(action.value["product_id"]),
        variant_id=action.value.get("variant_id"),
        quantity=quantity,
        source_id=action.id,
    )
    return DiscountResult(free_items=(item,))


def _additional_points(
    action: Action, targets: Sequence[LineItem], running: RunningTotals, cap: Decimal | None
) -> DiscountResult:
    if isinstance(action.value, dict) and "points_per_unit" in action.value:
        rate = _amount(action, action.value["points_per_unit"])
        points = int(rate * sum(item.quantity for item in targets))
    else:
        points = int(_amount(action, _field(action, "points")))
    return DiscountResult(points=points, affected_item_ids=_ids(targets) if points else ())


def _fit_to_cart_total(result: DiscountResult, running: RunningTotals) -> None:
    """
    Scale line discounts down to what earlier cart-level discounts left.

    Line totals do not see cart-level discounts, so a line action after a
    cart action could otherwise claim money that is already gone.
    """
    line_total = sum(result.line_discounts.values(), ZERO)
    available = max(running.cart_total, ZERO)
    if line_total <= available:
        return
    shares = allocate(available, list(result.line_discounts.items()), running.decimal_places)
    result.line_discounts = shares
    result.amount = sum(shares.values(), ZERO) + result.cart_discount
    result.affected_item_ids = tuple(
        item_id for item_id in result.affected_item_ids if item_id in shares or item_id in result.claimed_units
    )


Handler = Callable[[Action, Sequence[LineItem], RunningTotals, Decimal | None], DiscountResult]

_HANDLERS: dict[ActionType, Handler] = {
    ActionType.PERCENTAGE_DISCOUNT: _percentage_discount,
    ActionType.FIXED_AMOUNT_DISCOUNT: _fixed_amount_discount,
    ActionType.FIXED_PRICE: _fixed_price,
    ActionType.BUY_X_GET_Y_FREE: _buy_x_get_y_free,
    ActionType.BUY_X_GET_Y_DISCOUNT: _buy_x_get_y_discount,
    ActionType.FREE_SHIPPING: _free_shipping,
    ActionType.FREE_ITEM: _free_item,
    ActionType.ADDITIONAL_POINTS: _additional_points,
}


def apply(
    action: Action,
    target_items: Sequence[LineItem],
    running: RunningTotals,
    cap: Decimal | None = None,
) -> DiscountResult:
    """
    Compute the discount one action yields on the running totals.

    Args:
        action: The promotion action.
        target_items: Lines the action targets (see ``select_targets``).
        running: Current post-discount totals; not modified.
        cap: What is left of the promotion's ``max_discount_amount``.

    Raises:
        InvalidRuleError: unknown action type or malformed action value.
    """
    action_type = _parse_type(action)
    handler = _HANDLERS[action_type]
    if not target_items and action_type not in (ActionType.FREE_SHIPPING, ActionType.FREE_ITEM):
        return DiscountResult()
    result = handler(action, target_items, running, cap)
    _fit_to_cart_total(result, running)
    logger.debug(
        "Action %s (%s) computed discount %s on items %s",
        action_type.value,
        action.id,
        result.amount,
        ",".join(result.affected_item_ids),
    )
    return result
