"""
Promotion, coupon and price list models.

Supports:
- Promotions with rule groups and ordered actions
- Coupons linked to a promotion or carrying their own discount
- Customer price lists and quantity tier prices
- Dynamic pricing rules with their own conditions
- Usage counters, reservations and redemptions backing usage caps

The pricing engine never reads these models directly; ``repositories``
maps them to the immutable records in ``domain``.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .constants import (
    DEFAULT_RULE_GROUP,
    MAX_CODE_LENGTH,
    ActionType,
    ConditionType,
    CouponType,
    EntityKind,
    Operator,
    PriceAdjustment,
    PricingRuleScope,
    PricingRuleStatus,
    PromotionScope,
    PromotionStatus,
    ReservationStatus,
    TargetType,
    choices,
)

logger = logging.getLogger(__name__)

# Money columns keep four places so currencies with a 3-digit exponent fit
MONEY_DIGITS = 14
MONEY_PLACES = 4


def money_field(**kwargs: Any) -> models.DecimalField:
    return models.DecimalField(
        max_digits=MONEY_DIGITS,
        decimal_places=MONEY_PLACES,
        validators=[MinValueValidator(Decimal("0"))],
        **kwargs,
    )


# ===============================================================================
# Promotion Model
# ===============================================================================


class Promotion(models.Model):
    """
    Automatic discount campaign.
    Applied to every cart whose context satisfies its rules, unless it
    requires a coupon.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    name = models.CharField(max_length=200, help_text=_("Internal promotion name"))
    description = models.TextField(blank=True, help_text=_("Description shown to customers"))

    SCOPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(PromotionScope)
    scope = models.CharField(max_length=20, choices=SCOPE_CHOICES, default=PromotionScope.CART.value)

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(PromotionStatus)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PromotionStatus.ACTIVE.value)
    is_active = models.BooleanField(default=True, help_text=_("Master switch for promotion"))

    # Stacking
    priority = models.IntegerField(default=0, help_text=_("Higher priority is applied first"))
    is_exclusive = models.BooleanField(default=False, help_text=_("Cannot be combined with any other discount"))
    requires_coupon = models.BooleanField(default=False, help_text=_("Only applied through a linked coupon"))

    # Validity period
    start_date = models.DateTimeField(default=timezone.now, help_text=_("When promotion becomes active"))
    end_date = models.DateTimeField(null=True, blank=True, help_text=_("When promotion ends (null = never)"))

    # Usage limits
    max_usage = models.PositiveIntegerField(null=True, blank=True, help_text=_("Maximum total uses"))
    usage_count = models.PositiveIntegerField(default=0, help_text=_("Uses reserved or committed so far"))
    max_usage_per_customer = models.PositiveIntegerField(null=True, blank=True, help_text=_("Maximum uses per customer"))

    # Amount limits
    min_order_amount = money_field(null=True, blank=True, help_text=_("Minimum cart subtotal to qualify"))
    max_discount_amount = money_field(null=True, blank=True, help_text=_("Cap on the total discount given"))

    # Targeting
    merchant_id = models.CharField(max_length=64, blank=True, db_index=True)
    is_global = models.BooleanField(default=False, help_text=_("Applies to every merchant"))
    eligible_customer_groups = models.JSONField(default=list, blank=True, help_text=_("Empty = all groups"))
    excluded_customer_groups = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "promotions"
        verbose_name = _("Promotion")
        verbose_name_plural = _("Promotions")
        ordering: ClassVar[tuple[str, ...]] = ("-priority", "created_at")
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["scope", "status", "is_active"]),
            models.Index(fields=["start_date", "end_date"]),
            models.Index(fields=["merchant_id", "is_global"]),
        )

    def __str__(self) -> str:
        return self.name

    def clean(self) -> None:
        super().clean()
        if self.end_date and self.start_date and self.end_date <= self.start_date:
            raise ValidationError("end_date must be after start_date")
        if self.max_usage is not None and self.usage_count > self.max_usage:
            raise ValidationError("usage_count cannot exceed max_usage")


class PromotionRule(models.Model):
    """Single condition of a promotion, evaluated within its rule group."""

    promotion = models.ForeignKey(Promotion, on_delete=models.CASCADE, related_name="rules")
    name = models.CharField(max_length=200, blank=True)

    CONDITION_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(ConditionType)
    condition_type = models.CharField(max_length=30, choices=CONDITION_CHOICES)
    OPERATOR_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(Operator)
    operator = models.CharField(max_length=20, choices=OPERATOR_CHOICES)
    value = models.JSONField(help_text=_("Operand: scalar, list or [low, high] range"))

    is_required = models.BooleanField(
        default=True,
        help_text=_("Required rules must all hold; at least one optional rule must hold"),
    )
    rule_group = models.CharField(max_length=50, default=DEFAULT_RULE_GROUP)
    sort_order = models.IntegerField(default=0)

    class Meta:
        db_table = "promotion_rules"
        ordering: ClassVar[tuple[str, ...]] = ("sort_order", "id")

    def __str__(self) -> str:
        return f"{self.condition_type} {self.operator} {self.value!r}"


class PromotionAction(models.Model):
    """Discount or reward a promotion gives once its rules hold."""

    promotion = models.ForeignKey(Promotion, on_delete=models.CASCADE, related_name="actions")

    ACTION_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(ActionType)
    action_type = models.CharField(max_length=30, choices=ACTION_CHOICES)
    value = models.JSONField(default=dict, blank=True)

    TARGET_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(TargetType)
    target_type = models.CharField(max_length=20, choices=TARGET_CHOICES, default=TargetType.CART.value)
    target_ids = models.JSONField(default=list, blank=True, help_text=_("Product or category ids"))
    sort_order = models.IntegerField(default=0)

    class Meta:
        db_table = "promotion_actions"
        ordering: ClassVar[tuple[str, ...]] = ("sort_order", "id")

    def __str__(self) -> str:
        return f"{self.action_type} on {self.target_type}"


# ===============================================================================
# Coupon Model
# ===============================================================================


class Coupon(models.Model):
    """
    Coupon code entered by the customer.
    Either unlocks a linked promotion or carries its own discount.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    code = models.CharField(
        max_length=MAX_CODE_LENGTH,
        unique=True,
        help_text=_("Unique coupon code (case-insensitive)"),
    )
    name = models.CharField(max_length=200, blank=True, help_text=_("Internal name for this coupon"))

    promotion = models.ForeignKey(
        Promotion,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="coupons",
        help_text=_("Promotion this coupon unlocks"),
    )

    # Standalone discount (only when no promotion is linked)
    COUPON_TYPES: ClassVar[tuple[tuple[str, Any], ...]] = choices(CouponType)
    coupon_type = models.CharField(max_length=20, choices=COUPON_TYPES, blank=True)
    discount_value = models.DecimalField(
        max_digits=MONEY_DIGITS,
        decimal_places=MONEY_PLACES,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal("0"))],
        help_text=_("Percentage (0-100) or fixed amount"),
    )

    min_order_amount = money_field(null=True, blank=True, help_text=_("Minimum cart subtotal to qualify"))
    max_discount_amount = money_field(null=True, blank=True, help_text=_("Cap on the discount given"))

    # Validity period
    start_date = models.DateTimeField(default=timezone.now, help_text=_("When coupon becomes valid"))
    end_date = models.DateTimeField(null=True, blank=True, help_text=_("When coupon expires (null = never)"))
    is_active = models.BooleanField(default=True, help_text=_("Master switch for coupon"))

    # Usage limits
    is_one_time_use = models.BooleanField(default=False, help_text=_("Each customer may redeem it once"))
    max_usage = models.PositiveIntegerField(null=True, blank=True, help_text=_("Maximum total redemptions"))
    usage_count = models.PositiveIntegerField(default=0, help_text=_("Uses reserved or committed so far"))
    max_usage_per_customer = models.PositiveIntegerField(null=True, blank=True, help_text=_("Maximum uses per customer"))

    restrictions = models.JSONField(default=dict, blank=True, help_text=_("Product, customer and checkout restrictions"))

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "promotion_coupons"
        verbose_name = _("Coupon")
        verbose_name_plural = _("Coupons")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["code"]),
            models.Index(fields=["is_active", "start_date", "end_date"], name="idx_coupon_validity"),
        )

    def __str__(self) -> str:
        return f"{self.code} - {self.name}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        """Normalize code to uppercase before saving."""
        if self.code:
            self.code = self.code.upper().strip()
        super().save(*args, **kwargs)

    def clean(self) -> None:
        """Validate coupon configuration."""
        super().clean()
        self._validate_discount_source()
        self._validate_dates()

    def _validate_discount_source(self) -> None:
        standalone = bool(self.coupon_type) or self.discount_value is not None
        if self.promotion_id and standalone:
            raise ValidationError("A coupon linked to a promotion cannot carry its own discount")
        if not self.promotion_id and not self.coupon_type:
            raise ValidationError("A coupon needs either a promotion or a coupon type")
        if self.coupon_type in (CouponType.PERCENTAGE.value, CouponType.FIXED_AMOUNT.value):
            if self.discount_value is None:
                raise ValidationError(f"{self.coupon_type} coupon requires discount_value")
            if self.coupon_type == CouponType.PERCENTAGE.value and self.discount_value > 100:
                raise ValidationError("Percentage must be between 0 and 100")

    def _validate_dates(self) -> None:
        if self.end_date and self.start_date and self.end_date < self.start_date:
            raise ValidationError("end_date must be after start_date")


# ===============================================================================
# Price Lists
# ===============================================================================


class PriceList(models.Model):
    """Customer or customer-group specific prices."""

    name = models.CharField(max_length=200)
    priority = models.IntegerField(default=0, help_text=_("Higher priority wins between applicable lists"))
    customer_id = models.CharField(max_length=64, blank=True, db_index=True)
    customer_group = models.CharField(max_length=64, blank=True, db_index=True)
    is_active = models.BooleanField(default=True)
    start_date = models.DateTimeField(null=True, blank=True)
    end_date = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "promotion_price_lists"
        ordering: ClassVar[tuple[str, ...]] = ("-priority", "id")

    def __str__(self) -> str:
        return self.name

    def clean(self) -> None:
        super().clean()
        if not self.customer_id and not self.customer_group:
            raise ValidationError("A price list applies to a customer or a customer group")


class CustomerPrice(models.Model):
    price_list = models.ForeignKey(PriceList, on_delete=models.CASCADE, related_name="prices")
    product_id = models.CharField(max_length=64)
    variant_id = models.CharField(max_length=64, blank=True)

    ADJUSTMENT_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(PriceAdjustment)
    adjustment = models.CharField(max_length=20, choices=ADJUSTMENT_CHOICES, default=PriceAdjustment.FIXED.value)
    value = models.DecimalField(
        max_digits=MONEY_DIGITS,
        decimal_places=MONEY_PLACES,
        validators=[MinValueValidator(Decimal("0"))],
        help_text=_("Unit price, or percentage off the base price"),
    )

    class Meta:
        db_table = "promotion_customer_prices"
        indexes: ClassVar[tuple[models.Index, ...]] = (models.Index(fields=["product_id", "variant_id"]),)

    def __str__(self) -> str:
        return f"{self.product_id}: {self.adjustment} {self.value}"


class TierPrice(models.Model):
    """Quantity breakpoint price for a product."""

    product_id = models.CharField(max_length=64)
    variant_id = models.CharField(max_length=64, blank=True)
    customer_group = models.CharField(max_length=64, blank=True)
    quantity_min = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price = money_field()

    class Meta:
        db_table = "promotion_tier_prices"
        ordering: ClassVar[tuple[str, ...]] = ("product_id", "quantity_min")
        constraints: ClassVar[tuple[models.UniqueConstraint, ...]] = (
            models.UniqueConstraint(
                fields=["product_id", "variant_id", "customer_group", "quantity_min"],
                name="uniq_tier_price_breakpoint",
            ),
        )

    def __str__(self) -> str:
        return f"{self.product_id} x{self.quantity_min}: {self.price}"


class PricingRule(models.Model):
    """
    Dynamic unit price rule.
    Applied after tier and customer prices, highest priority first, when its
    scope and conditions match the line being priced.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    name = models.CharField(max_length=200, help_text=_("Internal rule name"))

    SCOPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(PricingRuleScope)
    scope = models.CharField(max_length=20, choices=SCOPE_CHOICES, default=PricingRuleScope.GLOBAL.value)

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(PricingRuleStatus)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PricingRuleStatus.ACTIVE.value)
    priority = models.IntegerField(default=0, help_text=_("Higher priority is applied first"))

    conditions = models.JSONField(
        default=list, blank=True, help_text=_("Rules like promotion rules: condition_type, operator, value")
    )
    adjustments = models.JSONField(default=list, help_text=_("Ordered [{type, value}] price changes"))

    # Scope targets
    product_ids = models.JSONField(default=list, blank=True)
    category_ids = models.JSONField(default=list, blank=True)
    customer_ids = models.JSONField(default=list, blank=True)
    customer_group_ids = models.JSONField(default=list, blank=True)

    # Validity period
    start_date = models.DateTimeField(null=True, blank=True)
    end_date = models.DateTimeField(null=True, blank=True)

    # Line and order bounds
    minimum_quantity = models.PositiveIntegerField(null=True, blank=True, help_text=_("Minimum line quantity"))
    maximum_quantity = models.PositiveIntegerField(null=True, blank=True, help_text=_("Maximum line quantity"))
    minimum_order_amount = money_field(null=True, blank=True, help_text=_("Minimum cart subtotal at list prices"))

    merchant_id = models.CharField(max_length=64, blank=True, db_index=True, help_text=_("Empty = every merchant"))

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "promotion_pricing_rules"
        verbose_name = _("Pricing rule")
        verbose_name_plural = _("Pricing rules")
        ordering: ClassVar[tuple[str, ...]] = ("-priority", "created_at")
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["status", "start_date", "end_date"], name="idx_pricing_rule_validity"),
        )

    def __str__(self) -> str:
        return self.name

    def clean(self) -> None:
        super().clean()
        if self.end_date and self.start_date and self.end_date <= self.start_date:
            raise ValidationError("end_date must be after start_date")
        if (
            self.minimum_quantity is not None
            and self.maximum_quantity is not None
            and self.minimum_quantity > self.maximum_quantity
        ):
            raise ValidationError("minimum_quantity cannot exceed maximum_quantity")
        if not self.adjustments:
            raise ValidationError("A pricing rule needs at least one adjustment")


# ===============================================================================
# Usage Tracking
# ===============================================================================


ENTITY_KIND_CHOICES: tuple[tuple[str, Any], ...] = choices(EntityKind)


class CustomerUsage(models.Model):
    """Per-customer usage counter of a promotion or coupon."""

    entity_kind = models.CharField(max_length=20, choices=ENTITY_KIND_CHOICES)
    entity_id = models.CharField(max_length=64)
    customer_id = models.CharField(max_length=64)
    usage_count = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "promotion_customer_usage"
        constraints: ClassVar[tuple[models.UniqueConstraint, ...]] = (
            models.UniqueConstraint(fields=["entity_kind", "entity_id", "customer_id"], name="uniq_customer_usage"),
        )

    def __str__(self) -> str:
        return f"{self.entity_kind}:{self.entity_id} by {self.customer_id} ({self.usage_count})"


class UsageReservation(models.Model):
    """
    Usage slot held for a cart between pricing and order placement.
    Committed when the order is placed, released or expired otherwise.
    """

    id = models.CharField(primary_key=True, max_length=32, editable=False)
    entity_kind = models.CharField(max_length=20, choices=ENTITY_KIND_CHOICES)
    entity_id = models.CharField(max_length=64)
    customer_id = models.CharField(max_length=64, blank=True)
    cart_id = models.CharField(max_length=64, blank=True)

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = choices(ReservationStatus)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=ReservationStatus.HELD.value)
    expires_at = models.DateTimeField()
    order_id = models.CharField(max_length=64, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "promotion_usage_reservations"
        ordering: ClassVar[tuple[str, ...]] = ("created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["cart_id", "status"]),
            models.Index(fields=["status", "expires_at"]),
            models.Index(fields=["entity_kind", "entity_id"]),
        )

    def __str__(self) -> str:
        return f"{self.entity_kind}:{self.entity_id} [{self.status}]"


class Redemption(models.Model):
    """Committed use of a promotion or coupon by an order."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reservation = models.OneToOneField(
        UsageReservation, on_delete=models.PROTECT, related_name="redemption", null=True, blank=True
    )
    entity_kind = models.CharField(max_length=20, choices=ENTITY_KIND_CHOICES)
    entity_id = models.CharField(max_length=64)
    code = models.CharField(max_length=MAX_CODE_LENGTH, blank=True)
    customer_id = models.CharField(max_length=64, blank=True)
    order_id = models.CharField(max_length=64)
    discount_amount = money_field(default=Decimal("0"))
    redeemed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "promotion_redemptions"
        ordering: ClassVar[tuple[str, ...]] = ("-redeemed_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["code", "customer_id"]),
            models.Index(fields=["order_id"]),
        )

    def __str__(self) -> str:
        return f"{self.code or self.entity_id} on order {self.order_id}"
