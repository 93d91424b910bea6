"""
Price resolution services.

PricingService is the entry point for cart and checkout code. It resolves
each line's price (base, then the better of tier and customer price list,
then dynamic pricing rules), ranks eligible promotions and validated coupons, applies them with
sequential stacking and exclusivity, reserves the usage slots of the
candidates it actually used and returns an auditable PricedResult.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from django.conf import settings
from django.utils import timezone

from apps.common.logging import evaluation_context
from apps.common.types import HUNDRED, ZERO, Result, quantize_money

from . import discounts, pricing_rules
from .candidates import promotion_candidate, rank_key, resolve_candidates
from .catalog import CouponCatalog, PriceCatalog, PromotionCatalog, UsageStore
from .constants import CouponPrecedence, EntityKind, PriceAdjustment, PromotionScope, RejectionReason
from .coupons import CouponValidator, ValidatedCoupon, normalize_code
from .domain import (
    AppliedAdjustment,
    Candidate,
    CustomerPrice,
    FreeItem,
    IneligibleCandidate,
    LineDiscount,
    LineItem,
    PricedLine,
    PricedResult,
    PricingContext,
    Reservation,
    TierPrice,
)
from .exceptions import ConfigurationError, CouponError, CouponErrorKind, InvalidRuleError, UsageReservationFailed
from .usage import UsageLedger

logger = logging.getLogger(__name__)

PRICE_SOURCE_BASE = "base"
PRICE_SOURCE_TIER = "tier"
PRICE_SOURCE_CUSTOMER = "customer_price"
PRICE_SOURCE_PRICING_RULE = "pricing_rule"

ALL_SCOPES = tuple(scope.value for scope in PromotionScope)


# ===============================================================================
# Data Classes for Results
# ===============================================================================


@dataclass(frozen=True)
class ResolvedPrice:
    """Unit price of one line after tier / customer price list overrides and pricing rules."""

    base_price: Decimal
    unit_price: Decimal
    source: str
    source_id: str | None = None
    pricing_rule_ids: tuple[str, ...] = ()


@dataclass
class Selection:
    """Outcome of one ranking/stacking pass over the candidates."""

    running: discounts.RunningTotals
    applied: list[tuple[Candidate, AppliedAdjustment]] = field(default_factory=list)
    rejected: list[IneligibleCandidate] = field(default_factory=list)


# ===============================================================================
# Line price resolution
# ===============================================================================


def customer_unit_price(entry: CustomerPrice, base_price: Decimal, decimal_places: int) -> Decimal:
    """Unit price a customer price list entry yields for ``base_price``."""
    try:
        adjustment = PriceAdjustment(entry.adjustment)
    except ValueError as e:
        raise InvalidRuleError(f"Unknown price adjustment {entry.adjustment!r}", entry.id) from e
    if adjustment in (PriceAdjustment.FIXED, PriceAdjustment.OVERRIDE):
        price = entry.value
    else:
        if not ZERO <= entry.value <= HUNDRED:
            raise InvalidRuleError(f"Price list percentage out of range: {entry.value}", entry.id)
        price = base_price * (HUNDRED - entry.value) / HUNDRED
    return max(quantize_money(price, decimal_places), ZERO)


def best_price(
    base_price: Decimal,
    tier: TierPrice | None,
    customer_price: CustomerPrice | None,
    decimal_places: int = 2,
) -> ResolvedPrice:
    """
    Pick the unit price for a line.

    The lower of the tier and customer price wins, a tie goes to the customer
    price (more specific), and an override never raises the base price.
    """
    best = ResolvedPrice(base_price, base_price, PRICE_SOURCE_BASE)
    options: list[ResolvedPrice] = []
    if customer_price is not None:
        options.append(
            ResolvedPrice(
                base_price,
                customer_unit_price(customer_price, base_price, decimal_places),
                PRICE_SOURCE_CUSTOMER,
                customer_price.id,
            )
        )
    if tier is not None:
        options.append(ResolvedPrice(base_price, max(tier.price, ZERO), PRICE_SOURCE_TIER, tier.id))
    for option in options:
        if option.unit_price > base_price:
            continue
        # customer price is listed first, so it keeps ties
        if best.source == PRICE_SOURCE_BASE or option.unit_price < best.unit_price:
            best = option
    return best


# ===============================================================================
# Pricing service
# ===============================================================================


class PricingService:
    """
    Cart pricing against promotions, coupons and price lists.

    ``price_cart`` and ``validate_coupon`` are idempotent for unchanged
    catalog state and usage counters: a cart that reprices reuses the
    reservations it already holds.
    """

    def __init__(
        self,
        promotions: PromotionCatalog,
        coupons: CouponCatalog,
        prices: PriceCatalog,
        usage: UsageStore,
        coupon_precedence: str | None = None,
        ledger: UsageLedger | None = None,
    ):
        self.promotions = promotions
        self.prices = prices
        self.ledger = ledger or UsageLedger(usage)
        self.validator = CouponValidator(coupons, self.ledger)
        precedence = coupon_precedence or getattr(
            settings, "PRICING_COUPON_PRECEDENCE", CouponPrecedence.PROMOTIONS_FIRST.value
        )
        try:
            self.coupon_precedence = CouponPrecedence(precedence)
        except ValueError as e:
            raise ConfigurationError(f"Unknown coupon precedence policy {precedence!r}") from e

    @classmethod
    def from_settings(cls) -> PricingService:
        """Service wired to the Django ORM collaborators."""
        from .repositories import (  # noqa: PLC0415
            OrmCouponCatalog,
            OrmPriceCatalog,
            OrmPromotionCatalog,
            OrmUsageStore,
        )

        return cls(OrmPromotionCatalog(), OrmCouponCatalog(), OrmPriceCatalog(), OrmUsageStore())

    # ===============================================================================
    # Public API
    # ===============================================================================

    def validate_coupon(self, code: str, context: PricingContext) -> Result[ValidatedCoupon, CouponError]:
        """Immediate coupon feedback for the cart UI, before full pricing."""
        with evaluation_context(cart_id=context.cart_id, customer_id=context.customer.id):
            priced_context, _ = self._resolve_line_prices(context)
            held = self.ledger.held_entities(context.cart_id, context.now)
            return self.validator.validate(code, priced_context, held)

    def price_cart(self, context: PricingContext, reserve: bool = True) -> PricedResult:
        """
        Price a cart.

        Args:
            context: The cart, customer, shipping and submitted coupon codes.
            reserve: Claim usage slots for the promotions and coupons applied.
                A contended slot drops that candidate and the cart is priced
                again without it.

        Raises:
            ConfigurationError: a promotion, rule, action or coupon is malformed.
            UpstreamCollaboratorError: a catalog or the usage store failed. No
                reservation taken by this call survives the failure.
        """
        with evaluation_context(cart_id=context.cart_id, customer_id=context.customer.id) as evaluation_id:
            try:
                return self._price_cart(context, reserve)
            except ConfigurationError as e:
                logger.error(
                    "Pricing aborted by misconfigured promotion data: %s",
                    e,
                    extra={"source_id": e.source_id, "evaluation_id": evaluation_id},
                )
                raise

    def commit(self, result: PricedResult, order_id: str, now: datetime | None = None) -> list[Reservation]:
        """
        Commit the reservations of a priced result once the order is placed.

        Returns the reservations that could not be committed because they were
        released or had lapsed; a non-empty list means the order must be repriced.
        """
        now = now or timezone.now()
        amounts = {(a.kind.value, a.source_id): (a.code, a.amount + a.shipping_discount) for a in result.applied}
        failed: list[Reservation] = []
        for reservation in result.reservations:
            code, amount = amounts.get((reservation.entity_kind.value, reservation.entity_id), (None, ZERO))
            if not self.ledger.commit(reservation, order_id, now, code=code, discount_amount=amount):
                failed.append(reservation)
        return failed

    def release(self, result: PricedResult | Iterable[Reservation], now: datetime | None = None) -> int:
        """Give back the usage slots of an abandoned cart or failed order."""
        reservations = result.reservations if isinstance(result, PricedResult) else result
        released = 0
        for reservation in reservations:
            if self.ledger.release(reservation, now):
                released += 1
        return released

    # ===============================================================================
    # Pipeline
    # ===============================================================================

    def _resolve_line_prices(self, context: PricingContext) -> tuple[PricingContext, dict[str, ResolvedPrice]]:
        """
        Apply tier and customer prices, then dynamic pricing rules.

        The returned context carries the resolved unit prices. Pricing rule
        conditions see the cart at list prices.
        """
        customer = context.customer
        rules = pricing_rules.ordered(self.prices.find_active_pricing_rules(context.merchant_id, context.now))
        resolved: dict[str, ResolvedPrice] = {}
        items: list[LineItem] = []
        for item in context.items:
            tier = self.prices.find_tier_price(item.product_id, item.variant_id, item.quantity, customer.group_ids)
            customer_price = self.prices.find_customer_price(
                customer.id, customer.group_ids, item.product_id, item.variant_id
            )
            price = best_price(item.unit_price, tier, customer_price, context.decimal_places)
            if rules:
                unit_price, rule_ids = pricing_rules.apply_pricing_rules(
                    rules, item, price.base_price, price.unit_price, context
                )
                if rule_ids:
                    price = ResolvedPrice(
                        price.base_price, unit_price, PRICE_SOURCE_PRICING_RULE, rule_ids[-1], rule_ids
                    )
            resolved[item.id] = price
            items.append(dataclasses.replace(item, unit_price=price.unit_price))

        codes = tuple(dict.fromkeys(normalize_code(code) for code in context.coupon_codes if code.strip()))
        return dataclasses.replace(context, items=tuple(items), coupon_codes=codes), resolved

    def _rank(self, candidates: Sequence[Candidate]) -> list[Candidate]:
        if self.coupon_precedence is CouponPrecedence.PROMOTIONS_FIRST:
            return sorted(candidates, key=lambda c: (c.kind is EntityKind.COUPON, *rank_key(c)))
        return sorted(candidates, key=lambda c: (-c.priority, c.created_at, c.kind is EntityKind.COUPON, c.source_id))

    def _price_cart(self, context: PricingContext, reserve: bool) -> PricedResult:
        now = context.now
        customer_id = context.customer.id
        priced_context, resolved = self._resolve_line_prices(context)
        held = self.ledger.held_entities(context.cart_id, now)

        resolution = resolve_candidates(
            self.promotions,
            ALL_SCOPES,
            priced_context,
            held,
            lambda kind, entity_id: self.ledger.customer_usage_count(kind, entity_id, customer_id),
        )
        candidates = [promotion_candidate(promotion) for promotion in resolution.eligible]
        rejected = list(resolution.rejected)

        coupon_errors: list[CouponError] = []
        for code in priced_context.coupon_codes:
            validation = self.validator.validate(code, priced_context, held)
            if validation.is_err():
                coupon_errors.append(validation.unwrap_err())
                continue
            validated = validation.unwrap()
            candidate = validated.candidate
            if any(existing.key == candidate.key for existing in candidates):
                continue
            linked = validated.coupon.promotion
            if linked is not None:
                # the coupon carries its promotion; never apply the same promotion twice
                candidates = [
                    c for c in candidates if not (c.kind is EntityKind.PROMOTION and c.source_id == linked.id)
                ]
            candidates.append(candidate)

        ranked = self._rank(candidates)
        excluded: dict[tuple[str, str], IneligibleCandidate] = {}
        acquired: list[Reservation] = []
        reservations: list[Reservation] = []

        try:
            # every failed round excludes one more candidate, so this ends
            for _round in range(len(ranked) + 1):
                selection = self._select([c for c in ranked if c.key not in excluded], priced_context)
                if not reserve:
                    break
                failure = self._reserve(selection, priced_context, held, acquired)
                if failure is None:
                    reservations = list({r.id: r for r in acquired}.values())
                    break
                candidate, error = failure
                excluded[candidate.key] = IneligibleCandidate(
                    kind=candidate.kind,
                    source_id=candidate.source_id,
                    reason=(
                        RejectionReason.PER_CUSTOMER_USAGE_EXCEEDED
                        if error.per_customer
                        else RejectionReason.USAGE_EXCEEDED
                    ),
                    detail=str(error),
                    code=candidate.code,
                )
                if candidate.code is not None:
                    coupon_errors.append(
                        CouponError(
                            (
                                CouponErrorKind.PER_CUSTOMER_USAGE_EXCEEDED
                                if error.per_customer
                                else CouponErrorKind.USAGE_EXCEEDED
                            ),
                            candidate.code,
                            "Coupon usage limit reached",
                        )
                    )
                logger.warning(
                    "Usage slot for %s %s taken, repricing without it",
                    candidate.kind.value,
                    candidate.source_id,
                    extra={"source_id": candidate.source_id, "cart_id": context.cart_id},
                )
            if reserve:
                self._release_stale(held, selection, priced_context)
        except Exception:
            self.ledger.release_many(r for r in acquired if (r.entity_kind.value, r.entity_id) not in held)
            raise

        result = self._assemble(
            priced_context, resolved, selection, rejected + list(excluded.values()), coupon_errors, reservations
        )
        logger.info(
            "Priced cart %s: subtotal=%s discount=%s total=%s applied=%d rejected=%d",
            context.cart_id or "-",
            result.subtotal,
            result.discount_total,
            result.total,
            len(result.applied),
            len(result.rejected),
            extra={"cart_id": context.cart_id, "total": str(result.total)},
        )
        return result

    def _select(self, ranked: Sequence[Candidate], context: PricingContext) -> Selection:
        """Exclusivity partition, then sequential stacking in rank order."""
        selection = Selection(
            running=discounts.RunningTotals(context.items, context.shipping.amount, context.decimal_places)
        )
        exclusive = sorted(
            (c for c in ranked if c.is_exclusive),
            key=lambda c: (-c.priority, c.created_at, c.kind is EntityKind.COUPON, c.source_id),
        )
        if exclusive:
            chosen = [exclusive[0]]
            for candidate in ranked:
                if candidate is not exclusive[0]:
                    selection.rejected.append(
                        IneligibleCandidate(
                            kind=candidate.kind,
                            source_id=candidate.source_id,
                            reason=RejectionReason.EXCLUSIVITY_CONFLICT,
                            detail=f"exclusive {exclusive[0].kind.value} {exclusive[0].source_id} applied",
                            code=candidate.code,
                        )
                    )
        else:
            chosen = list(ranked)

        for candidate in chosen:
            adjustment = self._apply_candidate(candidate, context, selection.running)
            if adjustment is None:
                selection.rejected.append(
                    IneligibleCandidate(
                        kind=candidate.kind,
                        source_id=candidate.source_id,
                        reason=RejectionReason.NO_EFFECT,
                        detail="no discount left to give",
                        code=candidate.code,
                    )
                )
                continue
            selection.applied.append((candidate, adjustment))
        return selection

    def _apply_candidate(
        self, candidate: Candidate, context: PricingContext, running: discounts.RunningTotals
    ) -> AppliedAdjustment | None:
        remaining_cap = candidate.max_discount_amount
        line_discounts: dict[str, Decimal] = {}
        cart_discount = ZERO
        affected: dict[str, None] = {}
        free_items: list[FreeItem] = []
        free_shipping = False
        points = 0

        for action in candidate.actions:
            targets = discounts.select_targets(action, context.items, candidate.eligible_item_ids)
            outcome = discounts.apply(action, targets, running, remaining_cap)
            running.record(outcome)
            if remaining_cap is not None:
                remaining_cap -= outcome.amount
            for item_id, amount in outcome.line_discounts.items():
                line_discounts[item_id] = line_discounts.get(item_id, ZERO) + amount
            cart_discount += outcome.cart_discount
            affected.update(dict.fromkeys(outcome.affected_item_ids))
            free_items.extend(dataclasses.replace(item, source_id=candidate.source_id) for item in outcome.free_items)
            free_shipping = free_shipping or outcome.free_shipping
            points += outcome.points

        amount = sum(line_discounts.values(), ZERO) + cart_discount
        if amount <= ZERO and not free_shipping and not free_items and not points:
            return None
        return AppliedAdjustment(
            kind=candidate.kind,
            source_id=candidate.source_id,
            name=candidate.name,
            amount=amount,
            cart_discount=cart_discount,
            line_discounts=line_discounts,
            affected_item_ids=tuple(affected),
            code=candidate.code,
            free_shipping=free_shipping,
            free_items=tuple(free_items),
            points=points,
        )

    def _reserve(
        self,
        selection: Selection,
        context: PricingContext,
        held: frozenset[tuple[str, str]],
        acquired: list[Reservation],
    ) -> tuple[Candidate, UsageReservationFailed] | None:
        """
        Reserve the slots of every applied candidate.

        On the first cap hit, the slots newly taken in this round are given
        back and the failing candidate is returned for exclusion.
        """
        round_start = len(acquired)
        for candidate, _adjustment in selection.applied:
            try:
                acquired.extend(
                    self.ledger.reserve_all(candidate.limits, context.customer.id, context.cart_id, context.now)
                )
            except UsageReservationFailed as e:
                fresh = [r for r in acquired[round_start:] if (r.entity_kind.value, r.entity_id) not in held]
                self.ledger.release_many(fresh)
                del acquired[round_start:]
                return candidate, e
        return None

    def _release_stale(self, held: frozenset[tuple[str, str]], selection: Selection, context: PricingContext) -> None:
        """Release holds this cart took on an earlier pricing but no longer uses."""
        if not held or not context.cart_id:
            return
        in_use = {
            (limit.entity_kind.value, limit.entity_id)
            for candidate, _adjustment in selection.applied
            for limit in candidate.limits
        }
        for key in held - in_use:
            reservation = self.ledger.find_held(key, context.cart_id, context.now)
            if reservation is not None:
                self.ledger.release(reservation, context.now)

    def _assemble(
        self,
        context: PricingContext,
        resolved: dict[str, ResolvedPrice],
        selection: Selection,
        rejected: list[IneligibleCandidate],
        coupon_errors: list[CouponError],
        reservations: list[Reservation],
    ) -> PricedResult:
        places = context.decimal_places
        running = selection.running

        per_line: dict[str, list[LineDiscount]] = {item.id: [] for item in context.items}
        for candidate, adjustment in selection.applied:
            for item_id, amount in adjustment.line_discounts.items():
                per_line[item_id].append(LineDiscount(candidate.kind, candidate.source_id, amount))

        lines: list[PricedLine] = []
        for item in context.items:
            price = resolved[item.id]
            lines.append(
                PricedLine(
                    item_id=item.id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    base_unit_price=price.base_price,
                    unit_price=price.unit_price,
                    price_source=price.source,
                    price_source_id=price.source_id,
                    discounts=tuple(per_line[item.id]),
                    final_total=max(running.line_totals[item.id], ZERO),
                    pricing_rule_ids=price.pricing_rule_ids,
                )
            )

        subtotal = context.subtotal
        lines_total = sum((line.final_total for line in lines), ZERO)
        cart_discount = min(running.cart_discount, lines_total)
        shipping = context.shipping.amount
        shipping_discount = shipping if running.free_shipping else ZERO

        applied: list[AppliedAdjustment] = []
        shipping_credited = False
        for _candidate, adjustment in selection.applied:
            if adjustment.free_shipping and not shipping_credited:
                adjustment = dataclasses.replace(adjustment, shipping_discount=shipping_discount)
                shipping_credited = True
            applied.append(adjustment)

        total = max(lines_total - cart_discount + shipping - shipping_discount, ZERO)
        return PricedResult(
            lines=tuple(lines),
            applied=tuple(applied),
            rejected=tuple(rejected + selection.rejected),
            coupon_errors=tuple(coupon_errors),
            subtotal=subtotal,
            line_discount_total=subtotal - lines_total,
            cart_discount=cart_discount,
            shipping_amount=shipping,
            shipping_discount=shipping_discount,
            total=quantize_money(total, places),
            free_items=tuple(item for adjustment in applied for item in adjustment.free_items),
            points=sum(adjustment.points for adjustment in applied),
            reservations=tuple(reservations),
        )
