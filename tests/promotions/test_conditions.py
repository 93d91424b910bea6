"""
Tests for promotion rule condition evaluation.
"""

from datetime import UTC, datetime
from decimal import Decimal

from django.test import SimpleTestCase

from apps.promotions.conditions import evaluate
from apps.promotions.exceptions import InvalidRuleError

from .fakes import context, customer, item, shipping


class NumericConditionTests(SimpleTestCase):
    """Tests for cart totals, quantities and customer history."""

    def setUp(self):
        self.ctx = context(item("a", "30.00", 2), item("b", "15.50"), shipping=shipping("5.00"))

    def test_cart_subtotal_comparisons(self):
        """Test every comparison operator on the cart subtotal (75.50)."""
        self.assertTrue(evaluate("cart_subtotal", "eq", "75.50", self.ctx))
        self.assertTrue(evaluate("cart_subtotal", "neq", 75, self.ctx))
        self.assertTrue(evaluate("cart_subtotal", "gt", 75, self.ctx))
        self.assertFalse(evaluate("cart_subtotal", "lt", 75, self.ctx))
        self.assertTrue(evaluate("cart_subtotal", "gte", "75.5", self.ctx))
        self.assertTrue(evaluate("cart_subtotal", "lte", 80, self.ctx))

    def test_cart_total_includes_shipping(self):
        """Test cart_total is subtotal plus shipping."""
        self.assertTrue(evaluate("cart_total", "eq", "80.50", self.ctx))

    def test_items_quantity_in_and_between(self):
        """Test list and range operators on the item quantity (3)."""
        self.assertTrue(evaluate("cart_items_quantity", "in", [1, 3, 5], self.ctx))
        self.assertTrue(evaluate("cart_items_quantity", "nin", [1, 2], self.ctx))
        self.assertTrue(evaluate("cart_items_quantity", "between", [3, 10], self.ctx))
        self.assertTrue(evaluate("cart_items_quantity", "not_between", [4, 10], self.ctx))

    def test_cart_weight(self):
        """Test cart weight multiplies unit weight by quantity."""
        ctx = context(item("a", 10, 3, weight=Decimal("1.5")))
        self.assertTrue(evaluate("cart_weight", "gte", "4.5", ctx))
        self.assertFalse(evaluate("cart_weight", "gt", "4.5", ctx))

    def test_missing_order_history_counts_as_zero(self):
        """Test a customer with no history is treated as having zero orders."""
        new_customer = context(item("a", 10), customer=customer())
        returning = context(item("a", 10), customer=customer(order_count=1, order_total=Decimal("99")))
        self.assertTrue(evaluate("customer_order_count", "eq", 0, new_customer))
        self.assertFalse(evaluate("customer_order_count", "eq", 0, returning))
        self.assertTrue(evaluate("customer_order_total", "lt", 1, new_customer))

    def test_between_requires_ordered_bounds(self):
        """Test a reversed range is a configuration error."""
        with self.assertRaises(InvalidRuleError):
            evaluate("cart_subtotal", "between", [100, 10], self.ctx)

    def test_between_requires_two_bounds(self):
        """Test a range with the wrong number of bounds is rejected."""
        with self.assertRaises(InvalidRuleError):
            evaluate("cart_subtotal", "between", [10], self.ctx)

    def test_non_numeric_value_rejected(self):
        """Test a non-numeric operand is a configuration error, not False."""
        with self.assertRaises(InvalidRuleError):
            evaluate("cart_subtotal", "gt", "lots", self.ctx)
        with self.assertRaises(InvalidRuleError):
            evaluate("cart_subtotal", "gt", True, self.ctx)

    def test_unsupported_operator_rejected(self):
        """Test string operators are not accepted for numeric conditions."""
        with self.assertRaises(InvalidRuleError):
            evaluate("cart_subtotal", "starts_with", "7", self.ctx)


class ScheduleConditionTests(SimpleTestCase):
    """Tests for day of week, time of day and date ranges."""

    def test_day_of_week_is_iso(self):
        """Test Monday is 1 and Sunday is 7 (evaluation date is a Wednesday)."""
        ctx = context(item("a", 10))
        self.assertTrue(evaluate("day_of_week", "eq", 3, ctx))
        self.assertTrue(evaluate("day_of_week", "in", [1, 2, 3, 4, 5], ctx))
        self.assertFalse(evaluate("day_of_week", "in", [6, 7], ctx))

    def test_time_of_day_window(self):
        """Test HH:MM windows, including one that wraps past midnight."""
        noon = context(item("a", 10))
        late = context(item("a", 10), now=datetime(2026, 3, 4, 23, 30, tzinfo=UTC))
        self.assertTrue(evaluate("time_of_day", "between", ["11:00", "13:00"], noon))
        self.assertFalse(evaluate("time_of_day", "between", ["22:00", "06:00"], noon))
        self.assertTrue(evaluate("time_of_day", "between", ["22:00", "06:00"], late))
        self.assertTrue(evaluate("time_of_day", "gte", "12:00", noon))

    def test_time_of_day_rejects_bad_clock(self):
        """Test an impossible clock time is a configuration error."""
        with self.assertRaises(InvalidRuleError):
            evaluate("time_of_day", "gt", "25:00", context(item("a", 10)))

    def test_date_range(self):
        """Test ISO timestamps, naive ones taking the evaluation timezone."""
        ctx = context(item("a", 10))
        self.assertTrue(evaluate("date_range", "between", ["2026-03-01T00:00:00+00:00", "2026-03-31"], ctx))
        self.assertTrue(evaluate("date_range", "not_between", ["2026-04-01", "2026-04-30"], ctx))
        self.assertTrue(evaluate("date_range", "gte", "2026-03-04T12:00:00", ctx))
        self.assertFalse(evaluate("date_range", "lt", "2026-03-04T12:00:00", ctx))

    def test_date_range_rejects_garbage(self):
        """Test a non-date operand is a configuration error."""
        with self.assertRaises(InvalidRuleError):
            evaluate("date_range", "gt", "next tuesday", context(item("a", 10)))


class StringConditionTests(SimpleTestCase):
    """Tests for shipping and payment conditions."""

    def test_shipping_country_is_case_insensitive(self):
        """Test country codes compare without regard to case."""
        ctx = context(item("a", 10), shipping=shipping(country="ro"))
        self.assertTrue(evaluate("shipping_country", "eq", "RO", ctx))
        self.assertTrue(evaluate("shipping_country", "in", ["DE", "RO"], ctx))
        self.assertFalse(evaluate("shipping_country", "nin", ["RO"], ctx))

    def test_shipping_method_is_case_sensitive(self):
        """Test methods other than country keep their case."""
        ctx = context(item("a", 10), shipping=shipping(method="Express"))
        self.assertTrue(evaluate("shipping_method", "starts_with", "Exp", ctx))
        self.assertTrue(evaluate("shipping_method", "ends_with", "ress", ctx))
        self.assertTrue(evaluate("shipping_method", "contains", "pre", ctx))
        self.assertTrue(evaluate("shipping_method", "not_contains", "standard", ctx))
        self.assertFalse(evaluate("shipping_method", "eq", "express", ctx))

    def test_absent_subject_is_false(self):
        """Test a missing payment method fails the condition instead of raising."""
        ctx = context(item("a", 10))
        self.assertFalse(evaluate("payment_method", "eq", "card", ctx))
        self.assertFalse(evaluate("payment_method", "neq", "card", ctx))

    def test_range_operator_rejected_even_without_subject(self):
        """Test an unsupported operator fails loudly even when there is no data."""
        with self.assertRaises(InvalidRuleError):
            evaluate("payment_method", "between", ["a", "b"], context(item("a", 10)))


class CollectionConditionTests(SimpleTestCase):
    """Tests for product, category, customer group and coupon conditions."""

    def setUp(self):
        self.ctx = context(
            item("a", 10, product_id="p1", sku="SKU-RED", category_ids=frozenset({"c1", "c2"}), brand_id="b1"),
            item("b", 10, product_id="p2", attributes={"color": "blue"}),
            customer=customer(group_ids=frozenset({"vip"}), tags=frozenset({"newsletter"})),
            coupon_codes=("SAVE10",),
        )

    def test_eq_means_membership(self):
        """Test eq asks whether the cart contains the value."""
        self.assertTrue(evaluate("product_ids", "eq", "p1", self.ctx))
        self.assertTrue(evaluate("product_ids", "neq", "p9", self.ctx))

    def test_in_and_nin(self):
        """Test in needs any overlap, nin needs none."""
        self.assertTrue(evaluate("category_ids", "in", ["c2", "c9"], self.ctx))
        self.assertTrue(evaluate("category_ids", "nin", ["c8", "c9"], self.ctx))
        self.assertFalse(evaluate("category_ids", "nin", ["c1"], self.ctx))

    def test_contains_means_all_present(self):
        """Test contains needs every listed value in the cart."""
        self.assertTrue(evaluate("product_ids", "contains", ["p1", "p2"], self.ctx))
        self.assertFalse(evaluate("product_ids", "contains", ["p1", "p3"], self.ctx))
        self.assertTrue(evaluate("product_ids", "not_contains", ["p1", "p3"], self.ctx))

    def test_sku_prefix(self):
        """Test starts_with and ends_with match any member."""
        self.assertTrue(evaluate("product_skus", "starts_with", "SKU-", self.ctx))
        self.assertTrue(evaluate("product_skus", "ends_with", "RED", self.ctx))

    def test_brand_and_customer_sets(self):
        """Test brand, customer group and tag conditions."""
        self.assertTrue(evaluate("brand_ids", "eq", "b1", self.ctx))
        self.assertTrue(evaluate("customer_group", "in", ["vip", "staff"], self.ctx))
        self.assertTrue(evaluate("customer_tags", "eq", "newsletter", self.ctx))

    def test_product_attributes(self):
        """Test attribute conditions read the named attribute across lines."""
        self.assertTrue(evaluate("product_attributes", "eq", {"attribute": "color", "value": "blue"}, self.ctx))
        self.assertFalse(evaluate("product_attributes", "eq", {"attribute": "color", "value": "red"}, self.ctx))
        with self.assertRaises(InvalidRuleError):
            evaluate("product_attributes", "eq", "blue", self.ctx)

    def test_coupon_code_is_case_insensitive(self):
        """Test submitted coupon codes match without regard to case."""
        self.assertTrue(evaluate("coupon_code", "eq", "save10", self.ctx))

    def test_unhashable_value_rejected(self):
        """Test a list where a scalar is expected is a configuration error."""
        with self.assertRaises(InvalidRuleError):
            evaluate("product_ids", "eq", ["p1"], self.ctx)


class UnknownConditionTests(SimpleTestCase):
    def test_unknown_condition_type(self):
        """Test an unknown condition type is a configuration error."""
        with self.assertRaises(InvalidRuleError):
            evaluate("moon_phase", "eq", "full", context(item("a", 10)))

    def test_unknown_operator(self):
        """Test an unknown operator is a configuration error."""
        with self.assertRaises(InvalidRuleError):
            evaluate("cart_subtotal", "approximately", 10, context(item("a", 10)))
