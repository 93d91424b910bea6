"""
Tests for promotion, coupon, price list and pricing rule model validation.
"""

from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase
from django.utils import timezone

from apps.promotions.models import Coupon, PriceList, PricingRule, Promotion, PromotionRule


class PromotionModelTests(TestCase):
    def test_end_date_after_start(self):
        now = timezone.now()
        promotion = Promotion(name="Backwards", start_date=now, end_date=now - timedelta(days=1))
        with self.assertRaises(ValidationError):
            promotion.clean()

    def test_usage_count_within_cap(self):
        with self.assertRaises(ValidationError):
            Promotion(name="Overused", max_usage=2, usage_count=3).clean()

    def test_str(self):
        promotion = Promotion.objects.create(name="Spring sale")
        rule = PromotionRule.objects.create(promotion=promotion, condition_type="cart_subtotal", operator="gte", value=50)
        self.assertEqual(str(promotion), "Spring sale")
        self.assertEqual(str(rule), "cart_subtotal gte 50")


class CouponModelTests(TestCase):
    """Test coupon normalization and discount source validation."""

    def test_code_uppercased_on_save(self):
        coupon = Coupon.objects.create(code=" save10 ", coupon_type="percentage", discount_value=Decimal("10"))
        coupon.refresh_from_db()
        self.assertEqual(coupon.code, "SAVE10")

    def test_valid_standalone_coupon(self):
        Coupon(code="FIVE", coupon_type="fixed_amount", discount_value=Decimal("5")).clean()
        Coupon(code="SHIP", coupon_type="free_shipping").clean()

    def test_needs_a_discount_source(self):
        with self.assertRaises(ValidationError):
            Coupon(code="EMPTY").clean()

    def test_promotion_and_own_discount_conflict(self):
        promotion = Promotion.objects.create(name="Linked")
        with self.assertRaises(ValidationError):
            Coupon(code="BOTH", promotion=promotion, coupon_type="percentage", discount_value=Decimal("5")).clean()
        Coupon(code="LINKED", promotion=promotion).clean()

    def test_discount_value_checks(self):
        with self.assertRaises(ValidationError):
            Coupon(code="NOVALUE", coupon_type="percentage").clean()
        with self.assertRaises(ValidationError):
            Coupon(code="TOOMUCH", coupon_type="percentage", discount_value=Decimal("120")).clean()

    def test_dates(self):
        now = timezone.now()
        with self.assertRaises(ValidationError):
            Coupon(code="OLD", coupon_type="free_shipping", start_date=now, end_date=now - timedelta(hours=1)).clean()


class PriceListModelTests(TestCase):
    def test_needs_customer_or_group(self):
        with self.assertRaises(ValidationError):
            PriceList(name="Nobody").clean()
        PriceList(name="Trade", customer_group="trade").clean()


class PricingRuleModelTests(TestCase):
    def test_needs_an_adjustment(self):
        with self.assertRaises(ValidationError):
            PricingRule(name="Empty").clean()

    def test_quantity_bounds(self):
        rule = PricingRule(
            name="Bulk", adjustments=[{"type": "percentage", "value": 5}], minimum_quantity=10, maximum_quantity=5
        )
        with self.assertRaises(ValidationError):
            rule.clean()

    def test_valid_rule(self):
        PricingRule(name="Bulk", adjustments=[{"type": "percentage", "value": 5}], minimum_quantity=10).clean()
