"""
Tests for the Result type and money helpers.
"""

from decimal import Decimal

from django.test import SimpleTestCase

from apps.common.types import Err, Ok, minor_unit, quantize_money, to_decimal


class ResultTypeTests(SimpleTestCase):
    def test_ok(self):
        result = Ok(5)
        self.assertTrue(result.is_ok())
        self.assertEqual(result.unwrap(), 5)
        self.assertEqual(result.map(lambda v: v * 2).unwrap(), 10)
        with self.assertRaises(ValueError):
            result.unwrap_err()

    def test_err(self):
        result = Err("bad")
        self.assertTrue(result.is_err())
        self.assertEqual(result.unwrap_or(0), 0)
        self.assertIs(result.map(lambda v: v * 2), result)
        with self.assertRaises(ValueError):
            result.unwrap()


class MoneyHelperTests(SimpleTestCase):
    """Test currency rounding and numeric coercion."""

    def test_minor_unit(self):
        self.assertEqual(minor_unit(2), Decimal("0.01"))
        self.assertEqual(minor_unit(0), Decimal("1"))
        self.assertEqual(minor_unit(3), Decimal("0.001"))

    def test_half_even(self):
        self.assertEqual(quantize_money(Decimal("0.125")), Decimal("0.12"))
        self.assertEqual(quantize_money(Decimal("0.135")), Decimal("0.14"))
        self.assertEqual(quantize_money(Decimal("2.5"), 0), Decimal("2"))

    def test_to_decimal(self):
        self.assertEqual(to_decimal(0.1), Decimal("0.1"))
        self.assertEqual(to_decimal("12.50"), Decimal("12.50"))
        self.assertEqual(to_decimal(3), Decimal("3"))

    def test_to_decimal_rejects_non_numbers(self):
        for value in (True, "abc", None, "NaN", "Infinity", [1]):
            with self.subTest(value=value), self.assertRaises(ValueError):
                to_decimal(value)
