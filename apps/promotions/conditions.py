"""
Condition evaluation for promotion rules.

``evaluate(condition_type, operator, value, context)`` answers one rule against
one pricing context. Each condition type maps to a subject extractor and a
subject kind (numeric, string, collection or datetime); each kind has its own
operator table. A condition/operator pair missing from the tables, or a value
of the wrong shape, raises InvalidRuleError instead of quietly evaluating to
False, so a broken promotion shows up in the logs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from apps.common.types import ZERO, to_decimal

from .constants import ConditionType, Operator
from .domain import PricingContext
from .exceptions import InvalidRuleError

logger = logging.getLogger(__name__)

MINUTES_PER_HOUR = 60
HOURS_PER_DAY = 24
RANGE_LENGTH = 2


class SubjectKind(Enum):
    NUMERIC = "numeric"
    STRING = "string"
    COLLECTION = "collection"
    DATETIME = "datetime"


# ===============================================================================
# Value parsing
# ===============================================================================


def _number(value: Any) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as e:
        raise InvalidRuleError(f"Expected a number, got {value!r}") from e


def _clock_minutes(value: Any) -> Decimal:
    """'HH:MM' (or plain minutes since midnight) -> minutes since midnight"""
    if isinstance(value, str) and ":" in value:
        hours, _, minutes = value.partition(":")
        try:
            h, m = int(hours), int(minutes)
        except ValueError as e:
            raise InvalidRuleError(f"Expected HH:MM, got {value!r}") from e
        if not (0 <= h < HOURS_PER_DAY and 0 <= m < MINUTES_PER_HOUR):
            raise InvalidRuleError(f"Time of day out of range: {value!r}")
        return Decimal(h * MINUTES_PER_HOUR + m)
    return _number(value)


def _timestamp(value: Any, reference: datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise InvalidRuleError(f"Expected an ISO-8601 timestamp, got {value!r}") from e
    else:
        raise InvalidRuleError(f"Expected an ISO-8601 timestamp, got {value!r}")
    if parsed.tzinfo is None and reference.tzinfo is not None:
        parsed = parsed.replace(tzinfo=reference.tzinfo)
    return parsed


def _sequence(value: Any) -> list[Any]:
    if isinstance(value, list | tuple | set | frozenset):
        return list(value)
    raise InvalidRuleError(f"Expected a list, got {value!r}")


def _pair(value: Any) -> tuple[Any, Any]:
    items = _sequence(value)
    if len(items) != RANGE_LENGTH:
        raise InvalidRuleError(f"Range operators need exactly two bounds, got {value!r}")
    return items[0], items[1]


def _text(value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidRuleError(f"Expected a string, got {value!r}")
    return value


# ===============================================================================
# Subject extractors
# ===============================================================================


def _cart_weight(context: PricingContext) -> Decimal:
    return sum((item.weight * item.quantity for item in context.items), ZERO)


def _attribute_values(context: PricingContext, value: Any) -> tuple[set[Any], Any]:
    if not isinstance(value, dict) or "attribute" not in value or "value" not in value:
        raise InvalidRuleError(f"product_attributes needs {{'attribute', 'value'}}, got {value!r}")
    name = value["attribute"]
    found = {item.attributes[name] for item in context.items if name in item.attributes}
    return found, value["value"]


Extractor = Callable[[PricingContext, Any], tuple[Any, Any]]


def _plain(getter: Callable[[PricingContext], Any]) -> Extractor:
    return lambda context, value: (getter(context), value)


_SUBJECTS: dict[ConditionType, tuple[SubjectKind, Extractor]] = {
    ConditionType.CART_SUBTOTAL: (SubjectKind.NUMERIC, _plain(lambda c: c.subtotal)),
    ConditionType.CART_TOTAL: (SubjectKind.NUMERIC, _plain(lambda c: c.total)),
    ConditionType.CART_ITEMS_QUANTITY: (SubjectKind.NUMERIC, _plain(lambda c: Decimal(c.total_quantity))),
    ConditionType.CART_WEIGHT: (SubjectKind.NUMERIC, _plain(_cart_weight)),
    ConditionType.CUSTOMER_ORDER_COUNT: (
        SubjectKind.NUMERIC,
        _plain(lambda c: Decimal(c.customer.order_count or 0)),
    ),
    ConditionType.CUSTOMER_ORDER_TOTAL: (
        SubjectKind.NUMERIC,
        _plain(lambda c: c.customer.order_total or ZERO),
    ),
    ConditionType.DAY_OF_WEEK: (SubjectKind.NUMERIC, _plain(lambda c: Decimal(c.now.isoweekday()))),
    ConditionType.TIME_OF_DAY: (
        SubjectKind.NUMERIC,
        _plain(lambda c: Decimal(c.now.hour * MINUTES_PER_HOUR + c.now.minute)),
    ),
    ConditionType.SHIPPING_COUNTRY: (SubjectKind.STRING, _plain(lambda c: c.shipping.country)),
    ConditionType.SHIPPING_REGION: (SubjectKind.STRING, _plain(lambda c: c.shipping.region)),
    ConditionType.SHIPPING_METHOD: (SubjectKind.STRING, _plain(lambda c: c.shipping.method)),
    ConditionType.PAYMENT_METHOD: (SubjectKind.STRING, _plain(lambda c: c.payment_method)),
    ConditionType.PRODUCT_IDS: (SubjectKind.COLLECTION, _plain(lambda c: {i.product_id for i in c.items})),
    ConditionType.PRODUCT_SKUS: (SubjectKind.COLLECTION, _plain(lambda c: {i.sku for i in c.items if i.sku})),
    ConditionType.PRODUCT_ATTRIBUTES: (SubjectKind.COLLECTION, _attribute_values),
    ConditionType.CATEGORY_IDS: (
        SubjectKind.COLLECTION,
        _plain(lambda c: {cid for i in c.items for cid in i.category_ids}),
    ),
    ConditionType.BRAND_IDS: (SubjectKind.COLLECTION, _plain(lambda c: {i.brand_id for i in c.items if i.brand_id})),
    ConditionType.CUSTOMER_GROUP: (SubjectKind.COLLECTION, _plain(lambda c: set(c.customer.group_ids))),
    ConditionType.CUSTOMER_TAGS: (SubjectKind.COLLECTION, _plain(lambda c: set(c.customer.tags))),
    ConditionType.COUPON_CODE: (SubjectKind.COLLECTION, _plain(lambda c: set(c.coupon_codes))),
    ConditionType.DATE_RANGE: (SubjectKind.DATETIME, _plain(lambda c: c.now)),
}

_CASE_INSENSITIVE = frozenset({ConditionType.SHIPPING_COUNTRY, ConditionType.COUPON_CODE})


# ===============================================================================
# Operator tables
# ===============================================================================


def _numeric_between(subject: Decimal, value: Any, parse: Callable[[Any], Decimal], wraps: bool) -> bool:
    low, high = (parse(bound) for bound in _pair(value))
    if low > high:
        if not wraps:
            raise InvalidRuleError(f"Range bounds out of order: {value!r}")
        # overnight window, e.g. 22:00-06:00
        return subject >= low or subject <= high
    return low <= subject <= high


def _numeric_op(operator: Operator, subject: Decimal, value: Any, parse: Callable[[Any], Decimal], wraps: bool) -> bool:
    match operator:
        case Operator.EQ:
            return subject == parse(value)
        case Operator.NEQ:
            return subject != parse(value)
        case Operator.GT:
            return subject > parse(value)
        case Operator.LT:
            return subject < parse(value)
        case Operator.GTE:
            return subject >= parse(value)
        case Operator.LTE:
            return subject <= parse(value)
        case Operator.IN:
            return subject in {parse(v) for v in _sequence(value)}
        case Operator.NIN:
            return subject not in {parse(v) for v in _sequence(value)}
        case Operator.BETWEEN:
            return _numeric_between(subject, value, parse, wraps)
        case Operator.NOT_BETWEEN:
            return not _numeric_between(subject, value, parse, wraps)
    raise InvalidRuleError(f"Operator {operator.value} is not supported for numeric conditions")


def _string_op(operator: Operator, subject: str, value: Any, fold: Callable[[str], str]) -> bool:
    subject = fold(subject)
    match operator:
        case Operator.EQ:
            return subject == fold(_text(value))
        case Operator.NEQ:
            return subject != fold(_text(value))
        case Operator.IN:
            return subject in {fold(_text(v)) for v in _sequence(value)}
        case Operator.NIN:
            return subject not in {fold(_text(v)) for v in _sequence(value)}
        case Operator.CONTAINS:
            return fold(_text(value)) in subject
        case Operator.NOT_CONTAINS:
            return fold(_text(value)) not in subject
        case Operator.STARTS_WITH:
            return subject.startswith(fold(_text(value)))
        case Operator.ENDS_WITH:
            return subject.endswith(fold(_text(value)))
    raise InvalidRuleError(f"Operator {operator.value} is not supported for string conditions")


def _as_set(value: Any) -> set[Any]:
    return set(value) if isinstance(value, list | tuple | set | frozenset) else {value}


def _collection_op(operator: Operator, subject: Iterable[Any], value: Any, fold: Callable[[Any], Any]) -> bool:
    members = {fold(member) for member in subject}
    match operator:
        case Operator.EQ:
            return fold(value) in members
        case Operator.NEQ:
            return fold(value) not in members
        case Operator.IN:
            return bool(members & {fold(v) for v in _sequence(value)})
        case Operator.NIN:
            return not members & {fold(v) for v in _sequence(value)}
        case Operator.CONTAINS:
            return {fold(v) for v in _as_set(value)} <= members
        case Operator.NOT_CONTAINS:
            return not {fold(v) for v in _as_set(value)} <= members
        case Operator.STARTS_WITH:
            prefix = fold(_text(value))
            return any(isinstance(m, str) and m.startswith(prefix) for m in members)
        case Operator.ENDS_WITH:
            suffix = fold(_text(value))
            return any(isinstance(m, str) and m.endswith(suffix) for m in members)
    raise InvalidRuleError(f"Operator {operator.value} is not supported for collection conditions")


def _datetime_op(operator: Operator, subject: datetime, value: Any) -> bool:
    match operator:
        case Operator.GT:
            return subject > _timestamp(value, subject)
        case Operator.LT:
            return subject < _timestamp(value, subject)
        case Operator.GTE:
            return subject >= _timestamp(value, subject)
        case Operator.LTE:
            return subject <= _timestamp(value, subject)
        case Operator.BETWEEN | Operator.NOT_BETWEEN:
            low, high = (_timestamp(bound, subject) for bound in _pair(value))
            if low > high:
                raise InvalidRuleError(f"Date range bounds out of order: {value!r}")
            inside = low <= subject <= high
            return inside if operator is Operator.BETWEEN else not inside
    raise InvalidRuleError(f"Operator {operator.value} is not supported for date conditions")


def _casefold(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


def _identity(value: Any) -> Any:
    return value


# ===============================================================================
# Public API
# ===============================================================================


def parse_condition(condition_type: str, operator: str) -> tuple[ConditionType, Operator]:
    try:
        parsed_type = ConditionType(condition_type)
    except ValueError as e:
        raise InvalidRuleError(f"Unknown condition type {condition_type!r}") from e
    try:
        parsed_operator = Operator(operator)
    except ValueError as e:
        raise InvalidRuleError(f"Unknown operator {operator!r}") from e
    return parsed_type, parsed_operator


def evaluate(condition_type: str, operator: str, value: Any, context: PricingContext) -> bool:
    """
    Evaluate one rule condition against the pricing context.

    Absent context data (no shipping country, no payment method) makes the
    condition False. Missing customer history counts as zero orders.

    Raises:
        InvalidRuleError: unknown condition type or operator, an operator the
            condition does not support, or a malformed value.
    """
    parsed_type, parsed_operator = parse_condition(condition_type, operator)
    kind, extract = _SUBJECTS[parsed_type]
    subject, operand = extract(context, value)
    fold = _casefold if parsed_type in _CASE_INSENSITIVE else _identity

    if kind is SubjectKind.NUMERIC:
        is_clock = parsed_type is ConditionType.TIME_OF_DAY
        parse = _clock_minutes if is_clock else _number
        return _numeric_op(parsed_operator, subject, operand, parse, wraps=is_clock)
    if kind is SubjectKind.STRING:
        if subject is None:
            # still reject operators the condition can never support
            if parsed_operator in (Operator.GT, Operator.LT, Operator.GTE, Operator.LTE,
                                   Operator.BETWEEN, Operator.NOT_BETWEEN):
                raise InvalidRuleError(
                    f"Operator {parsed_operator.value} is not supported for string conditions"
                )
            return False
        return _string_op(parsed_operator, subject, operand, fold)
    if kind is SubjectKind.COLLECTION:
        try:
            return _collection_op(parsed_operator, subject, operand, fold)
        except TypeError as e:
            raise InvalidRuleError(f"Unhashable value for {parsed_type.value}: {operand!r}") from e
    return _datetime_op(parsed_operator, subject, operand)
