"""
Tests for PricingService: line prices, stacking, exclusivity, coupons and reservations.
"""

import threading
from datetime import timedelta
from decimal import Decimal

from django.test import SimpleTestCase

from apps.promotions.constants import EntityKind, RejectionReason
from apps.promotions.domain import CustomerPrice, TierPrice
from apps.promotions.exceptions import (
    ConfigurationError,
    CouponErrorKind,
    TransientStoreError,
    UpstreamCollaboratorError,
)
from apps.promotions.services import PricingService, best_price
from apps.promotions.usage import UsageLedger

from .fakes import (
    NOW,
    FakeCouponCatalog,
    FakePriceCatalog,
    FakePromotionCatalog,
    InMemoryUsageStore,
    action,
    context,
    coupon,
    customer,
    item,
    percent_off,
    pricing_rule,
    promotion,
    rule,
    shipping,
)


def make_service(promotions=(), coupons=(), tiers=(), customer_prices=(), store=None, pricing_rules=(), **kwargs):
    store = store or InMemoryUsageStore()
    service = PricingService(
        FakePromotionCatalog(promotions),
        FakeCouponCatalog(coupons),
        FakePriceCatalog(tiers, customer_prices, pricing_rules),
        store,
        ledger=UsageLedger(store, ttl_seconds=900, max_attempts=3),
        **kwargs,
    )
    return service, store


def applied_ids(result):
    return [a.source_id for a in result.applied]


def rejection_reasons(result):
    return {r.source_id: r.reason for r in result.rejected}


class LinePriceTests(SimpleTestCase):
    """Tests for tier and customer price resolution."""

    def test_tier_breakpoints(self):
        """Test tiers {1: 10, 10: 9, 50: 8} price a quantity of 10 at 9."""
        tiers = [
            TierPrice("t1", "widget", 1, Decimal("10")),
            TierPrice("t10", "widget", 10, Decimal("9")),
            TierPrice("t50", "widget", 50, Decimal("8")),
        ]
        service, _ = make_service(tiers=tiers)
        result = service.price_cart(context(item("a", 10, 10, product_id="widget")))
        line = result.lines[0]
        self.assertEqual(line.unit_price, Decimal("9"))
        self.assertEqual(line.price_source, "tier")
        self.assertEqual(line.price_source_id, "t10")
        self.assertEqual(result.total, Decimal("90.00"))

    def test_customer_price_for_group(self):
        entry = CustomerPrice("cp1", "widget", "percentage", Decimal("20"))
        service, _ = make_service(customer_prices=[("wholesale", entry)])
        ctx = context(item("a", 10, product_id="widget"), customer=customer(group_ids=frozenset({"wholesale"})))
        line = service.price_cart(ctx).lines[0]
        self.assertEqual(line.unit_price, Decimal("8.00"))
        self.assertEqual(line.price_source, "customer_price")

    def test_best_price_prefers_lower_and_customer_on_tie(self):
        tier = TierPrice("t", "p", 1, Decimal("8"))
        self.assertEqual(best_price(Decimal("10"), tier, None).source, "tier")
        tie = CustomerPrice("cp", "p", "fixed", Decimal("8"))
        self.assertEqual(best_price(Decimal("10"), tier, tie).source, "customer_price")
        cheaper_tier = CustomerPrice("cp", "p", "fixed", Decimal("9"))
        self.assertEqual(best_price(Decimal("10"), tier, cheaper_tier).unit_price, Decimal("8"))

    def test_override_never_raises_base(self):
        dearer = CustomerPrice("cp", "p", "fixed", Decimal("12"))
        price = best_price(Decimal("10"), None, dearer)
        self.assertEqual(price.source, "base")
        self.assertEqual(price.unit_price, Decimal("10"))

    def test_customer_price_override(self):
        entry = CustomerPrice("cp", "p", "override", Decimal("7"))
        self.assertEqual(best_price(Decimal("10"), None, entry).unit_price, Decimal("7.00"))


class PricingRuleStepTests(SimpleTestCase):
    """Tests for dynamic pricing rules inside a full pricing call."""

    def test_rule_applies_after_tier_price(self):
        """Test a 10% rule runs on the tier price, not the list price."""
        tiers = [TierPrice("t10", "widget", 10, Decimal("9"))]
        rules = [pricing_rule("pr", "product", ("percentage", 10), product_ids={"widget"})]
        service, _ = make_service(tiers=tiers, pricing_rules=rules)
        result = service.price_cart(context(item("a", 10, 10, product_id="widget")))
        line = result.lines[0]
        self.assertEqual(line.base_unit_price, Decimal("10"))
        self.assertEqual(line.unit_price, Decimal("8.10"))
        self.assertEqual(line.price_source, "pricing_rule")
        self.assertEqual(line.price_source_id, "pr")
        self.assertEqual(line.pricing_rule_ids, ("pr",))
        self.assertEqual(result.subtotal, Decimal("81.00"))

    def test_rule_conditions_gate_the_rule(self):
        rules = [
            pricing_rule("wknd", "global", ("percentage", 50), conditions=(rule("day_of_week", "in", [6, 7]),))
        ]
        service, _ = make_service(pricing_rules=rules)
        line = service.price_cart(context(item("a", 10))).lines[0]
        self.assertEqual(line.unit_price, Decimal("10"))
        self.assertEqual(line.price_source, "base")
        self.assertEqual(line.pricing_rule_ids, ())

    def test_promotions_stack_on_rule_price(self):
        rules = [pricing_rule("pr", "global", ("override", 8))]
        service, _ = make_service([promotion("p", percent_off(50))], pricing_rules=rules)
        result = service.price_cart(context(item("a", 10, 2)))
        self.assertEqual(result.subtotal, Decimal("16.00"))
        self.assertEqual(result.total, Decimal("8.00"))

    def test_rules_fetched_once_per_call(self):
        service, _ = make_service(pricing_rules=[pricing_rule("pr", "global", ("percentage", 10))])
        service.price_cart(context(item("a", 10), item("b", 20)))
        self.assertEqual(service.prices.rule_queries, 1)


class StackingTests(SimpleTestCase):
    """Tests for sequential stacking, caps and exclusivity."""

    def test_exclusive_promotion_wins(self):
        """Test an exclusive promotion suppresses every other candidate."""
        promotions = [
            promotion("big", percent_off(20), priority=10),
            promotion("solo", percent_off(10), priority=1, is_exclusive=True),
        ]
        service, _ = make_service(promotions)
        result = service.price_cart(context(item("a", 100)))
        self.assertEqual(applied_ids(result), ["solo"])
        self.assertEqual(rejection_reasons(result)["big"], RejectionReason.EXCLUSIVITY_CONFLICT)
        self.assertEqual(result.total, Decimal("90.00"))

    def test_non_exclusive_promotions_stack_in_priority_order(self):
        promotions = [
            promotion("second", percent_off(10), priority=1),
            promotion("first", action("fixed_amount_discount", {"amount": 10}), priority=5),
        ]
        service, _ = make_service(promotions)
        result = service.price_cart(context(item("a", 100)))
        self.assertEqual(applied_ids(result), ["first", "second"])
        self.assertEqual(result.total, Decimal("81.00"))

    def test_discount_cap(self):
        """Test subtotal 40 at 10% with a cap of 3 gives 37."""
        service, _ = make_service([promotion("p", percent_off(10), max_discount_amount=Decimal("3"))])
        result = service.price_cart(context(item("a", 40)))
        self.assertEqual(result.applied[0].amount, Decimal("3"))
        self.assertEqual(result.total, Decimal("37.00"))

    def test_buy_one_get_one(self):
        """Test buy 1 get 1 over units {10, 8, 6} totals 18."""
        service, _ = make_service([promotion("bogo", action("buy_x_get_y_free", {"buy": 1, "get": 1}))])
        result = service.price_cart(context(item("a", 10), item("b", 8), item("c", 6)))
        self.assertEqual(result.total, Decimal("18.00"))
        self.assertEqual([d.amount for d in result.lines[2].discounts], [Decimal("6.00")])

    def test_total_stays_between_zero_and_base(self):
        """Test no combination of discounts drives the total negative or above the base."""
        configurations = [
            [promotion("huge", action("fixed_amount_discount", {"amount": 500}))],
            [promotion("a", percent_off(100)), promotion("b", action("fixed_amount_discount", {"amount": 5}))],
            [
                promotion(
                    "lines",
                    action("fixed_amount_discount", {"amount": 50}, target_type="product", target_ids={"prod-a"}),
                )
            ],
            [],
        ]
        ctx = context(item("a", 30), item("b", "12.50", 2), shipping=shipping("4.99"))
        base = ctx.subtotal + Decimal("4.99")
        for promotions in configurations:
            with self.subTest(promotions=[p.id for p in promotions]):
                result = make_service(promotions)[0].price_cart(ctx)
                self.assertGreaterEqual(result.total, Decimal("0"))
                self.assertLessEqual(result.total, base)
                for line in result.lines:
                    self.assertGreaterEqual(line.final_total, Decimal("0"))

    def test_line_discount_after_cart_discount(self):
        """Test a line-level action only takes what an earlier cart-level discount left."""
        promotions = [
            promotion("cart", action("fixed_amount_discount", {"amount": 8}), priority=10),
            promotion(
                "line",
                action("fixed_price", {"price": 1}, target_type="product", target_ids={"prod-a"}),
                priority=1,
            ),
        ]
        service, _ = make_service(promotions)
        result = service.price_cart(context(item("a", 10)))
        self.assertEqual(applied_ids(result), ["cart", "line"])
        self.assertEqual([a.amount for a in result.applied], [Decimal("8"), Decimal("2")])
        self.assertEqual(result.total, Decimal("0.00"))
        self.assertEqual(sum(a.amount for a in result.applied), result.subtotal - result.total)

    def test_applied_amounts_add_up_to_discount(self):
        """Test the applied amounts always account for the whole discount."""
        configurations = [
            [
                promotion("cart", percent_off(50), priority=10),
                promotion("line", percent_off(80, target_type="product", target_ids={"prod-b"}), priority=1),
            ],
            [
                promotion("cart", action("fixed_amount_discount", {"amount": 40}), priority=10),
                promotion("bogo", action("buy_x_get_y_free", {"buy": 1, "get": 1}), priority=5),
                promotion(
                    "line",
                    action("fixed_amount_discount", {"amount": 30}, target_type="product", target_ids={"prod-a"}),
                    priority=1,
                ),
            ],
        ]
        ctx = context(item("a", 30), item("b", "12.50", 2))
        for promotions in configurations:
            with self.subTest(promotions=[p.id for p in promotions]):
                result = make_service(promotions)[0].price_cart(ctx)
                self.assertEqual(sum(a.amount for a in result.applied), result.subtotal - result.total)

    def test_free_shipping(self):
        service, _ = make_service([promotion("ship", action("free_shipping"), scope="shipping")])
        result = service.price_cart(context(item("a", 20), shipping=shipping("4.99")))
        self.assertEqual(result.shipping_discount, Decimal("4.99"))
        self.assertEqual(result.applied[0].shipping_discount, Decimal("4.99"))
        self.assertEqual(result.total, Decimal("20.00"))

    def test_customer_order_count_rule(self):
        """Test a first-order promotion applies to new customers only."""
        service, _ = make_service(
            [promotion("welcome", percent_off(10), rules=(rule("customer_order_count", "eq", 0),))]
        )
        new = service.price_cart(context(item("a", 50), customer=customer()))
        returning = service.price_cart(context(item("a", 50), customer=customer(order_count=3)))
        self.assertEqual(new.total, Decimal("45.00"))
        self.assertEqual(returning.total, Decimal("50.00"))
        self.assertEqual(rejection_reasons(returning)["welcome"], RejectionReason.RULES_NOT_MET)

    def test_misconfigured_promotion_raises(self):
        """Test a malformed action aborts pricing instead of being skipped."""
        service, _ = make_service([promotion("broken", action("double_or_nothing", 1))])
        with self.assertRaises(ConfigurationError):
            service.price_cart(context(item("a", 10)))


class CouponPricingTests(SimpleTestCase):
    """Tests for coupons inside a full pricing call."""

    def test_coupon_applied(self):
        service, _ = make_service(coupons=[coupon("c1", "SAVE10", coupon_type="percentage", discount_value=10)])
        result = service.price_cart(context(item("a", 50), coupon_codes=("save10",)))
        self.assertEqual(result.applied[0].code, "SAVE10")
        self.assertEqual(result.total, Decimal("45.00"))

    def test_unknown_coupon_is_reported_not_raised(self):
        service, _ = make_service()
        result = service.price_cart(context(item("a", 50), coupon_codes=("NOPE",)))
        self.assertEqual(result.coupon_errors[0].kind, CouponErrorKind.NOT_FOUND)
        self.assertEqual(result.total, Decimal("50.00"))

    def test_coupon_precedence(self):
        """Test promotions_first applies automatic promotions before coupons regardless of priority."""
        auto = promotion("auto", action("fixed_amount_discount", {"amount": 10}), priority=1)
        linked = promotion("linked", percent_off(50), priority=5, requires_coupon=True)
        coupons = [coupon("c1", "HALF", promotion=linked)]
        ctx = context(item("a", 100), coupon_codes=("HALF",))

        promotions_first, _ = make_service([auto], coupons, coupon_precedence="promotions_first")
        by_priority, _ = make_service([auto], coupons, coupon_precedence="priority")
        self.assertEqual(promotions_first.price_cart(ctx).total, Decimal("45.00"))
        self.assertEqual(by_priority.price_cart(ctx).total, Decimal("40.00"))

    def test_unknown_precedence_rejected(self):
        with self.assertRaises(ConfigurationError):
            make_service(coupon_precedence="coupons_whenever")

    def test_linked_coupon_supersedes_automatic_promotion(self):
        """Test a promotion reached through its coupon is not applied a second time."""
        p = promotion("p", percent_off(10))
        service, store = make_service([p], [coupon("c1", "TEN", promotion=p, max_usage=5)])
        result = service.price_cart(context(item("a", 100), coupon_codes=("TEN",), cart_id="cart-1"))
        self.assertEqual([(a.kind, a.source_id) for a in result.applied], [(EntityKind.COUPON, "c1")])
        self.assertEqual(result.total, Decimal("90.00"))
        self.assertEqual(store.count(EntityKind.COUPON, "c1"), 1)

    def test_coupon_skips_excluded_variant(self):
        """Test excluding one variant keeps the coupon off that line only."""
        c = coupon(
            "c1", "HALF", coupon_type="percentage", discount_value=50, restrictions={"excluded_product_ids": ["v1"]}
        )
        service, _ = make_service(coupons=[c])
        ctx = context(
            item("a", 10, product_id="p", variant_id="v1"),
            item("b", 10, product_id="p", variant_id="v2"),
            coupon_codes=("HALF",),
        )
        result = service.price_cart(ctx)
        self.assertEqual([line.final_total for line in result.lines], [Decimal("10.00"), Decimal("5.00")])
        self.assertEqual(result.total, Decimal("15.00"))

    def test_linked_coupon_honours_product_restriction(self):
        """Test a linked coupon restricted to one product only discounts that product."""
        linked = promotion("half", percent_off(50), requires_coupon=True)
        c = coupon("c1", "HALF", promotion=linked, restrictions={"product_ids": ["pa"]})
        service, _ = make_service([linked], [c])
        ctx = context(item("a", 10, product_id="pa"), item("b", 10, product_id="pb"), coupon_codes=("HALF",))
        result = service.price_cart(ctx)
        self.assertEqual(result.applied[0].affected_item_ids, ("a",))
        self.assertEqual(result.total, Decimal("15.00"))

    def test_validate_coupon_uses_resolved_prices(self):
        """Test minimum order checks see tier prices, not list prices."""
        tiers = [TierPrice("t", "widget", 5, Decimal("8"))]
        c = coupon("c1", "BIG", coupon_type="percentage", discount_value=10, min_order_amount=Decimal("45"))
        service, _ = make_service(coupons=[c], tiers=tiers)
        result = service.validate_coupon("BIG", context(item("a", 10, 5, product_id="widget")))
        self.assertEqual(result.unwrap_err().kind, CouponErrorKind.MIN_ORDER_NOT_MET)

    def test_last_coupon_use_goes_to_one_cart(self):
        """Test two carts racing for a coupon with max_usage=1 get exactly one discount."""
        store = InMemoryUsageStore()
        coupons = [coupon("c1", "LAST", coupon_type="percentage", discount_value=10, max_usage=1)]
        barrier = threading.Barrier(2)
        results = {}
        errors = []

        def checkout(cart_id, customer_id):
            service, _ = make_service(coupons=coupons, store=store)
            ctx = context(item("a", 50), cart_id=cart_id, customer=customer(customer_id), coupon_codes=("LAST",))
            barrier.wait()
            try:
                results[cart_id] = service.price_cart(ctx)
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [
            threading.Thread(target=checkout, args=("cart-1", "cust-1")),
            threading.Thread(target=checkout, args=("cart-2", "cust-2")),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        totals = sorted(result.total for result in results.values())
        self.assertEqual(totals, [Decimal("45.00"), Decimal("50.00")])
        loser = next(result for result in results.values() if result.total == Decimal("50.00"))
        self.assertEqual(loser.coupon_errors[0].kind, CouponErrorKind.USAGE_EXCEEDED)
        self.assertEqual(rejection_reasons(loser)["c1"], RejectionReason.USAGE_EXCEEDED)
        self.assertEqual(store.count(EntityKind.COUPON, "c1"), 1)


class ReservationTests(SimpleTestCase):
    """Tests for usage reservations taken by price_cart."""

    def setUp(self):
        self.capped = promotion("p", percent_off(10), max_usage=1)
        self.service, self.store = make_service([self.capped])
        self.ctx = context(item("a", 100), cart_id="cart-1")

    def test_repricing_is_idempotent(self):
        """Test pricing the same cart twice gives the same result and holds one slot."""
        first = self.service.price_cart(self.ctx)
        second = self.service.price_cart(self.ctx)
        self.assertEqual(first.total, second.total)
        self.assertEqual(applied_ids(first), applied_ids(second))
        self.assertEqual([r.id for r in first.reservations], [r.id for r in second.reservations])
        self.assertEqual(self.store.count(EntityKind.PROMOTION, "p"), 1)

    def test_other_cart_sees_cap(self):
        self.service.price_cart(self.ctx)
        other = self.service.price_cart(context(item("a", 100), cart_id="cart-2"))
        self.assertEqual(other.applied, ())
        self.assertEqual(other.total, Decimal("100.00"))

    def test_reserve_false_takes_no_slot(self):
        result = self.service.price_cart(self.ctx, reserve=False)
        self.assertEqual(result.reservations, ())
        self.assertEqual(self.store.count(EntityKind.PROMOTION, "p"), 0)

    def test_stale_hold_released_on_reprice(self):
        """Test removing a coupon from the cart gives its slot back."""
        service, store = make_service(coupons=[coupon("c1", "X", coupon_type="fixed_amount", discount_value=5, max_usage=3)])
        service.price_cart(context(item("a", 50), cart_id="cart-1", coupon_codes=("X",)))
        self.assertEqual(store.count(EntityKind.COUPON, "c1"), 1)
        service.price_cart(context(item("a", 50), cart_id="cart-1"))
        self.assertEqual(store.count(EntityKind.COUPON, "c1"), 0)

    def test_commit(self):
        result = self.service.price_cart(self.ctx)
        self.assertEqual(self.service.commit(result, "order-1", NOW), [])
        self.assertEqual(self.store.redemptions[0]["order_id"], "order-1")
        self.assertEqual(self.store.redemptions[0]["discount_amount"], Decimal("10.00"))
        # a committed use is not given back
        self.assertEqual(self.service.release(result, NOW), 0)
        self.assertEqual(self.store.count(EntityKind.PROMOTION, "p"), 1)

    def test_commit_after_lapse_needs_reprice(self):
        result = self.service.price_cart(self.ctx)
        failed = self.service.commit(result, "order-1", NOW + timedelta(hours=1))
        self.assertEqual([r.entity_id for r in failed], ["p"])

    def test_release(self):
        result = self.service.price_cart(self.ctx)
        self.assertEqual(self.service.release(result, NOW), 1)
        self.assertEqual(self.store.count(EntityKind.PROMOTION, "p"), 0)

    def test_upstream_failure_releases_new_holds(self):
        """Test a failing store call leaves no reservation from the aborted call behind."""

        class ContendedStore(InMemoryUsageStore):
            def conditional_increment(self, limits, customer_id):
                if limits.entity_id == "second":
                    raise TransientStoreError("lock timeout")
                return super().conditional_increment(limits, customer_id)

        store = ContendedStore()
        service, _ = make_service(
            [
                promotion("first", percent_off(10), priority=10, max_usage=5),
                promotion("second", percent_off(10), priority=1, max_usage=5),
            ],
            store=store,
        )
        with self.assertRaises(UpstreamCollaboratorError):
            service.price_cart(self.ctx)
        self.assertEqual(store.count(EntityKind.PROMOTION, "first"), 0)
