"""
Promotion engine enumerations and limits.

Condition, operator and action types are stored as plain strings on the
promotion records; the engine parses them into these enums at evaluation
time and dispatches on the enum value.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Final


class PromotionScope(str, Enum):
    """Entity a promotion targets"""

    CART = "cart"
    PRODUCT = "product"
    CATEGORY = "category"
    MERCHANT = "merchant"
    SHIPPING = "shipping"
    GLOBAL = "global"


class PromotionStatus(str, Enum):
    ACTIVE = "active"
    SCHEDULED = "scheduled"
    EXPIRED = "expired"
    DISABLED = "disabled"
    PENDING_APPROVAL = "pending_approval"


class ConditionType(str, Enum):
    """Context facts a promotion rule can test"""

    CART_SUBTOTAL = "cart_subtotal"
    CART_TOTAL = "cart_total"
    CART_ITEMS_QUANTITY = "cart_items_quantity"
    CART_WEIGHT = "cart_weight"
    PRODUCT_IDS = "product_ids"
    PRODUCT_SKUS = "product_skus"
    PRODUCT_ATTRIBUTES = "product_attributes"
    CATEGORY_IDS = "category_ids"
    BRAND_IDS = "brand_ids"
    CUSTOMER_GROUP = "customer_group"
    CUSTOMER_TAGS = "customer_tags"
    CUSTOMER_ORDER_COUNT = "customer_order_count"
    CUSTOMER_ORDER_TOTAL = "customer_order_total"
    SHIPPING_COUNTRY = "shipping_country"
    SHIPPING_REGION = "shipping_region"
    SHIPPING_METHOD = "shipping_method"
    PAYMENT_METHOD = "payment_method"
    COUPON_CODE = "coupon_code"
    DATE_RANGE = "date_range"
    DAY_OF_WEEK = "day_of_week"
    TIME_OF_DAY = "time_of_day"


class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    BETWEEN = "between"
    NOT_BETWEEN = "not_between"


class ActionType(str, Enum):
    PERCENTAGE_DISCOUNT = "percentage_discount"
    FIXED_AMOUNT_DISCOUNT = "fixed_amount_discount"
    FIXED_PRICE = "fixed_price"
    BUY_X_GET_Y_FREE = "buy_x_get_y_free"
    BUY_X_GET_Y_DISCOUNT = "buy_x_get_y_discount"
    FREE_SHIPPING = "free_shipping"
    FREE_ITEM = "free_item"
    ADDITIONAL_POINTS = "additional_points"


class TargetType(str, Enum):
    CART = "cart"
    PRODUCT = "product"
    CATEGORY = "category"


class CouponType(str, Enum):
    """Standalone coupon discount kinds (coupons without a linked promotion)"""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SHIPPING = "free_shipping"


class RestrictionType(str, Enum):
    PRODUCT_IDS = "product_ids"
    CATEGORY_IDS = "category_ids"
    EXCLUDED_PRODUCT_IDS = "excluded_product_ids"
    EXCLUDED_CATEGORY_IDS = "excluded_category_ids"
    CUSTOMER_GROUPS = "customer_groups"
    PAYMENT_METHODS = "payment_methods"
    SHIPPING_METHODS = "shipping_methods"
    COUNTRIES = "countries"
    MINIMUM_QUANTITY = "minimum_quantity"
    MAXIMUM_QUANTITY = "maximum_quantity"


class PriceAdjustment(str, Enum):
    """How a price list entry or pricing rule changes the unit price"""

    FIXED = "fixed"  # replaces the unit price when lower
    PERCENTAGE = "percentage"  # percent off the price
    OVERRIDE = "override"  # replaces the unit price, up to the base price


class PricingRuleScope(str, Enum):
    """Which lines and customers a dynamic pricing rule reaches"""

    GLOBAL = "global"
    PRODUCT = "product"
    CATEGORY = "category"
    CUSTOMER = "customer"
    CUSTOMER_GROUP = "customer_group"


class PricingRuleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class EntityKind(str, Enum):
    PROMOTION = "promotion"
    COUPON = "coupon"


class ReservationStatus(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"


class CouponPrecedence(str, Enum):
    """Where validated coupons rank relative to automatic promotions"""

    PROMOTIONS_FIRST = "promotions_first"
    PRIORITY = "priority"


class RejectionReason(str, Enum):
    """Why a promotion or coupon did not contribute to a priced result"""

    INACTIVE = "INACTIVE"
    REQUIRES_COUPON = "REQUIRES_COUPON"
    NOT_STARTED = "NOT_STARTED"
    EXPIRED = "EXPIRED"
    USAGE_EXCEEDED = "USAGE_EXCEEDED"
    PER_CUSTOMER_USAGE_EXCEEDED = "PER_CUSTOMER_USAGE_EXCEEDED"
    CUSTOMER_INELIGIBLE = "CUSTOMER_INELIGIBLE"
    MIN_ORDER_NOT_MET = "MIN_ORDER_NOT_MET"
    RULES_NOT_MET = "RULES_NOT_MET"
    EXCLUSIVITY_CONFLICT = "EXCLUSIVITY_CONFLICT"
    NO_EFFECT = "NO_EFFECT"
    COUPON_INVALID = "COUPON_INVALID"


def choices(enum_cls: type[Enum]) -> tuple[tuple[str, Any], ...]:
    """Model field choices for one of the enums above."""
    return tuple((member.value, member.value.replace("_", " ").capitalize()) for member in enum_cls)


DEFAULT_RULE_GROUP: Final[str] = "default"
MAX_CODE_LENGTH: Final[int] = 50
