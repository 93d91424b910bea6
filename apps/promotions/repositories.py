"""
Django ORM implementations of the pricing engine's collaborators.

Model rows are mapped to the frozen records in ``domain`` so the engine never
touches a queryset. Usage counters move with conditional ``F()`` updates, so
two carts racing for the last slot of a cap cannot both win.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Collection, Iterator, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from django.db import DatabaseError, OperationalError, transaction
from django.db.models import F, Q, QuerySet
from django.utils import timezone

from apps.common.types import to_decimal

from . import models
from .constants import DEFAULT_RULE_GROUP, EntityKind, PricingRuleStatus, PromotionStatus, ReservationStatus
from .coupons import normalize_code
from .domain import (
    Action,
    Coupon,
    CustomerPrice,
    PricingRule,
    Promotion,
    Reservation,
    Rule,
    RuleAdjustment,
    TierPrice,
    UsageLimits,
)
from .exceptions import InvalidRuleError, TransientStoreError, UpstreamCollaboratorError

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def database_errors(transient: bool = False) -> Iterator[None]:
    """
    Translate database failures into collaborator errors.

    With ``transient`` set, lock timeouts and similar OperationalErrors become
    TransientStoreError so the usage ledger retries them.
    """
    try:
        yield
    except OperationalError as e:
        if transient:
            raise TransientStoreError(str(e)) from e
        raise UpstreamCollaboratorError(f"Database unavailable: {e}") from e
    except DatabaseError as e:
        raise UpstreamCollaboratorError(f"Database error: {e}") from e


# ===============================================================================
# Row -> record mapping
# ===============================================================================


def _id_set(values: Collection[object] | None) -> frozenset[str]:
    return frozenset(str(v) for v in values or ())


def rule_record(row: models.PromotionRule) -> Rule:
    return Rule(
        id=str(row.pk),
        condition_type=row.condition_type,
        operator=row.operator,
        value=row.value,
        is_required=row.is_required,
        rule_group=row.rule_group,
        sort_order=row.sort_order,
        name=row.name,
    )


def action_record(row: models.PromotionAction) -> Action:
    return Action(
        id=str(row.pk),
        action_type=row.action_type,
        value=row.value,
        target_type=row.target_type,
        target_ids=_id_set(row.target_ids),
        sort_order=row.sort_order,
    )


def promotion_record(row: models.Promotion) -> Promotion:
    return Promotion(
        id=str(row.pk),
        name=row.name,
        scope=row.scope,
        status=row.status,
        is_active=row.is_active,
        priority=row.priority,
        is_exclusive=row.is_exclusive,
        requires_coupon=row.requires_coupon,
        start_date=row.start_date,
        end_date=row.end_date,
        max_usage=row.max_usage,
        usage_count=row.usage_count,
        max_usage_per_customer=row.max_usage_per_customer,
        min_order_amount=row.min_order_amount,
        max_discount_amount=row.max_discount_amount,
        eligible_customer_groups=_id_set(row.eligible_customer_groups),
        excluded_customer_groups=_id_set(row.excluded_customer_groups),
        merchant_id=row.merchant_id or None,
        is_global=row.is_global,
        rules=tuple(rule_record(rule) for rule in row.rules.all()),
        actions=tuple(action_record(action) for action in row.actions.all()),
        created_at=row.created_at,
    )


def coupon_record(row: models.Coupon) -> Coupon:
    return Coupon(
        id=str(row.pk),
        code=row.code,
        name=row.name,
        promotion=promotion_record(row.promotion) if row.promotion is not None else None,
        coupon_type=row.coupon_type or None,
        discount_value=row.discount_value,
        min_order_amount=row.min_order_amount,
        max_discount_amount=row.max_discount_amount,
        start_date=row.start_date,
        end_date=row.end_date,
        is_active=row.is_active,
        is_one_time_use=row.is_one_time_use,
        max_usage=row.max_usage,
        usage_count=row.usage_count,
        max_usage_per_customer=row.max_usage_per_customer,
        restrictions=row.restrictions or {},
        created_at=row.created_at,
    )


def _condition_record(rule_id: str, index: int, raw: Any) -> Rule:
    if not isinstance(raw, dict) or "condition_type" not in raw or "operator" not in raw:
        raise InvalidRuleError(f"Pricing rule condition {index} needs condition_type and operator", rule_id)
    return Rule(
        id=str(raw.get("id", f"{rule_id}:{index}")),
        condition_type=raw["condition_type"],
        operator=raw["operator"],
        value=raw.get("value"),
        is_required=raw.get("is_required", True),
        rule_group=raw.get("rule_group", DEFAULT_RULE_GROUP),
        sort_order=raw.get("sort_order", index),
        name=raw.get("name", ""),
    )


def _adjustment_record(rule_id: str, raw: Any) -> RuleAdjustment:
    if not isinstance(raw, dict) or "type" not in raw or "value" not in raw:
        raise InvalidRuleError("Pricing rule adjustment needs type and value", rule_id)
    try:
        value = to_decimal(raw["value"])
    except ValueError as e:
        raise InvalidRuleError(f"Pricing rule adjustment value is not a number: {raw['value']!r}", rule_id) from e
    return RuleAdjustment(type=str(raw["type"]), value=value)


def pricing_rule_record(row: models.PricingRule) -> PricingRule:
    rule_id = str(row.pk)
    return PricingRule(
        id=rule_id,
        name=row.name,
        scope=row.scope,
        priority=row.priority,
        conditions=tuple(_condition_record(rule_id, i, raw) for i, raw in enumerate(row.conditions or ())),
        adjustments=tuple(_adjustment_record(rule_id, raw) for raw in row.adjustments or ()),
        product_ids=_id_set(row.product_ids),
        category_ids=_id_set(row.category_ids),
        customer_ids=_id_set(row.customer_ids),
        customer_group_ids=_id_set(row.customer_group_ids),
        start_date=row.start_date,
        end_date=row.end_date,
        minimum_quantity=row.minimum_quantity,
        maximum_quantity=row.maximum_quantity,
        minimum_order_amount=row.minimum_order_amount,
        created_at=row.created_at,
    )


def reservation_record(row: models.UsageReservation) -> Reservation:
    return Reservation(
        id=row.pk,
        entity_kind=EntityKind(row.entity_kind),
        entity_id=row.entity_id,
        customer_id=row.customer_id or None,
        cart_id=row.cart_id or None,
        expires_at=row.expires_at,
        status=ReservationStatus(row.status),
    )


# ===============================================================================
# Catalogs
# ===============================================================================


class OrmPromotionCatalog:
    def find_active_promotions(self, scope: str, merchant_id: str | None) -> Sequence[Promotion]:
        tenant = Q(is_global=True) | Q(merchant_id=merchant_id or "")
        with database_errors():
            rows = (
                models.Promotion.objects.filter(tenant, scope=scope, is_active=True, status=PromotionStatus.ACTIVE.value)
                .prefetch_related("rules", "actions")
                .order_by("-priority", "created_at")
            )
            return [promotion_record(row) for row in rows]


class OrmCouponCatalog:
    def find_coupon_by_code(self, code: str) -> Coupon | None:
        normalized = normalize_code(code)
        if not normalized:
            return None
        with database_errors():
            row = (
                models.Coupon.objects.select_related("promotion")
                .prefetch_related("promotion__rules", "promotion__actions")
                .filter(code__iexact=normalized)
                .first()
            )
            return coupon_record(row) if row is not None else None


class OrmPriceCatalog:
    def find_tier_price(
        self, product_id: str, variant_id: str | None, quantity: int, group_ids: Collection[str] = ()
    ) -> TierPrice | None:
        with database_errors():
            rows = list(
                models.TierPrice.objects.filter(
                    product_id=product_id,
                    variant_id__in={variant_id or "", ""},
                    customer_group__in={*group_ids, ""},
                    quantity_min__lte=quantity,
                )
            )
        if not rows:
            return None
        # variant rows beat product-wide rows, group rows beat group-less rows
        best = max(rows, key=lambda r: (bool(r.variant_id), bool(r.customer_group), r.quantity_min))
        return TierPrice(
            id=str(best.pk),
            product_id=best.product_id,
            quantity_min=best.quantity_min,
            price=best.price,
            variant_id=best.variant_id or None,
        )

    def find_customer_price(
        self, customer_id: str | None, group_ids: Collection[str], product_id: str, variant_id: str | None
    ) -> CustomerPrice | None:
        audience = Q(price_list__customer_group__in=list(group_ids)) if group_ids else Q(pk__in=[])
        if customer_id:
            audience |= Q(price_list__customer_id=customer_id)
        now = timezone.now()
        with database_errors():
            rows = list(
                models.CustomerPrice.objects.select_related("price_list")
                .filter(audience, product_id=product_id, variant_id__in={variant_id or "", ""})
                .filter(price_list__is_active=True)
                .filter(Q(price_list__start_date__isnull=True) | Q(price_list__start_date__lte=now))
                .filter(Q(price_list__end_date__isnull=True) | Q(price_list__end_date__gt=now))
            )
        if not rows:
            return None
        best = max(
            rows,
            key=lambda r: (
                bool(customer_id) and r.price_list.customer_id == customer_id,
                bool(r.variant_id),
                r.price_list.priority,
                -r.price_list.pk,
            ),
        )
        return CustomerPrice(
            id=str(best.pk),
            product_id=best.product_id,
            adjustment=best.adjustment,
            value=best.value,
            variant_id=best.variant_id or None,
            price_list_id=str(best.price_list_id),
        )

    def find_active_pricing_rules(self, merchant_id: str | None, now: datetime) -> Sequence[PricingRule]:
        tenant = Q(merchant_id="") | Q(merchant_id=merchant_id or "")
        with database_errors():
            rows = (
                models.PricingRule.objects.filter(tenant, status=PricingRuleStatus.ACTIVE.value)
                .filter(Q(start_date__isnull=True) | Q(start_date__lte=now))
                .filter(Q(end_date__isnull=True) | Q(end_date__gte=now))
                .order_by("-priority", "created_at")
            )
            return [pricing_rule_record(row) for row in rows]


# ===============================================================================
# Usage store
# ===============================================================================


class _CapReached(Exception):
    """Rolls back the global increment when the per-customer cap is reached."""


def _entity_model(entity_kind: EntityKind) -> type[models.Promotion] | type[models.Coupon]:
    return models.Promotion if entity_kind is EntityKind.PROMOTION else models.Coupon


class OrmUsageStore:
    """
    Usage counters on the promotion and coupon rows, per-customer counters in
    CustomerUsage. Every increment is a conditional UPDATE, so the database
    serializes the race for the last slot.
    """

    def conditional_increment(self, limits: UsageLimits, customer_id: str | None) -> bool:
        model = _entity_model(limits.entity_kind)
        entity_rows = model.objects.filter(pk=limits.entity_id)
        if limits.max_usage is not None:
            entity_rows = entity_rows.filter(usage_count__lt=limits.max_usage)
        try:
            with database_errors(transient=True), transaction.atomic():
                if not entity_rows.update(usage_count=F("usage_count") + 1):
                    return False
                if customer_id:
                    usage, _ = models.CustomerUsage.objects.get_or_create(
                        entity_kind=limits.entity_kind.value, entity_id=limits.entity_id, customer_id=customer_id
                    )
                    customer_rows = models.CustomerUsage.objects.filter(pk=usage.pk)
                    if limits.max_usage_per_customer is not None:
                        customer_rows = customer_rows.filter(usage_count__lt=limits.max_usage_per_customer)
                    if not customer_rows.update(usage_count=F("usage_count") + 1):
                        raise _CapReached
        except _CapReached:
            return False
        return True

    def decrement(self, entity_kind: EntityKind, entity_id: str, customer_id: str | None) -> None:
        with database_errors(transient=True), transaction.atomic():
            _entity_model(entity_kind).objects.filter(pk=entity_id, usage_count__gt=0).update(
                usage_count=F("usage_count") - 1
            )
            if customer_id:
                models.CustomerUsage.objects.filter(
                    entity_kind=entity_kind.value, entity_id=entity_id, customer_id=customer_id, usage_count__gt=0
                ).update(usage_count=F("usage_count") - 1)

    def usage_counts(self, entity_kind: EntityKind, entity_id: str, customer_id: str | None) -> tuple[int, int]:
        with database_errors(transient=True):
            total = (
                _entity_model(entity_kind).objects.filter(pk=entity_id).values_list("usage_count", flat=True).first()
            )
            customer_count = None
            if customer_id:
                customer_count = (
                    models.CustomerUsage.objects.filter(
                        entity_kind=entity_kind.value, entity_id=entity_id, customer_id=customer_id
                    )
                    .values_list("usage_count", flat=True)
                    .first()
                )
        return total or 0, customer_count or 0

    def has_prior_redemption(self, code: str, customer_id: str) -> bool:
        with database_errors(transient=True):
            return models.Redemption.objects.filter(code__iexact=code, customer_id=customer_id).exists()

    def record_redemption(
        self, reservation: Reservation, order_id: str, code: str | None, discount_amount: Decimal, now: datetime
    ) -> None:
        with database_errors(), transaction.atomic():
            models.UsageReservation.objects.filter(pk=reservation.id).update(order_id=order_id, updated_at=now)
            models.Redemption.objects.create(
                reservation_id=reservation.id,
                entity_kind=reservation.entity_kind.value,
                entity_id=reservation.entity_id,
                code=code or "",
                customer_id=reservation.customer_id or "",
                order_id=order_id,
                discount_amount=discount_amount,
                redeemed_at=now,
            )

    def save_reservation(self, reservation: Reservation) -> None:
        with database_errors(transient=True):
            models.UsageReservation.objects.create(
                id=reservation.id,
                entity_kind=reservation.entity_kind.value,
                entity_id=reservation.entity_id,
                customer_id=reservation.customer_id or "",
                cart_id=reservation.cart_id or "",
                status=reservation.status.value,
                expires_at=reservation.expires_at,
            )

    def _live(self, cart_id: str, now: datetime) -> QuerySet[models.UsageReservation]:
        return models.UsageReservation.objects.filter(
            cart_id=cart_id, status=ReservationStatus.HELD.value, expires_at__gt=now
        )

    def find_reservation(
        self, entity_kind: EntityKind, entity_id: str, cart_id: str, now: datetime
    ) -> Reservation | None:
        with database_errors(transient=True):
            row = self._live(cart_id, now).filter(entity_kind=entity_kind.value, entity_id=entity_id).first()
        return reservation_record(row) if row is not None else None

    def held_entities(self, cart_id: str, now: datetime) -> frozenset[tuple[str, str]]:
        with database_errors(transient=True):
            return frozenset(self._live(cart_id, now).values_list("entity_kind", "entity_id"))

    def transition_reservation(self, reservation_id: str, to_status: ReservationStatus, now: datetime) -> bool:
        rows = models.UsageReservation.objects.filter(pk=reservation_id, status=ReservationStatus.HELD.value)
        if to_status is ReservationStatus.COMMITTED:
            rows = rows.filter(expires_at__gt=now)
        elif to_status is ReservationStatus.EXPIRED:
            rows = rows.filter(expires_at__lte=now)
        with database_errors(transient=True):
            return rows.update(status=to_status.value, updated_at=now) == 1

    def expired_reservations(self, now: datetime) -> Sequence[Reservation]:
        with database_errors(transient=True):
            rows = models.UsageReservation.objects.filter(status=ReservationStatus.HELD.value, expires_at__lte=now)
            return [reservation_record(row) for row in rows]
