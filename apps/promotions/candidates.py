"""
Promotion candidate resolution.

Turns the catalog's active promotions into the ordered list of promotions
eligible for one pricing context, recording why every other promotion was
left out. Read-only: usage counters are only looked at, never changed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field

from .catalog import PromotionCatalog
from .constants import EntityKind, PromotionStatus, RejectionReason
from .domain import Candidate, CustomerInfo, IneligibleCandidate, PricingContext, Promotion, UsageLimits
from .rules import first_failure

logger = logging.getLogger(__name__)

# (entity kind, entity id) -> this customer's current usage count
CustomerUsageLookup = Callable[[EntityKind, str], int]


@dataclass
class CandidateResolution:
    eligible: list[Promotion] = field(default_factory=list)
    rejected: list[IneligibleCandidate] = field(default_factory=list)


# ===============================================================================
# Eligibility checks shared with coupon validation
# ===============================================================================


def is_live(promotion: Promotion) -> bool:
    return promotion.is_active and promotion.status == PromotionStatus.ACTIVE.value


def customer_group_allowed(promotion: Promotion, customer: CustomerInfo) -> bool:
    if promotion.excluded_customer_groups & customer.group_ids:
        return False
    if promotion.eligible_customer_groups:
        return bool(promotion.eligible_customer_groups & customer.group_ids)
    return True


def promotion_limits(promotion: Promotion) -> UsageLimits:
    return UsageLimits(
        entity_kind=EntityKind.PROMOTION,
        entity_id=promotion.id,
        max_usage=promotion.max_usage,
        max_usage_per_customer=promotion.max_usage_per_customer,
    )


def rank_key(candidate: Candidate) -> tuple:
    """Priority descending, oldest first on ties, id as the final tie-break."""
    return (-candidate.priority, candidate.created_at, candidate.source_id)


def promotion_candidate(promotion: Promotion) -> Candidate:
    has_limits = promotion.max_usage is not None or promotion.max_usage_per_customer is not None
    return Candidate(
        kind=EntityKind.PROMOTION,
        source_id=promotion.id,
        name=promotion.name,
        priority=promotion.priority,
        is_exclusive=promotion.is_exclusive,
        actions=tuple(sorted(promotion.actions, key=lambda a: (a.sort_order, a.id))),
        limits=(promotion_limits(promotion),) if has_limits else (),
        max_discount_amount=promotion.max_discount_amount,
        created_at=promotion.created_at,
    )


# ===============================================================================
# Resolver
# ===============================================================================


def _rejection(
    promotion: Promotion,
    context: PricingContext,
    held: Collection[tuple[str, str]],
    customer_usage: CustomerUsageLookup | None,
) -> tuple[RejectionReason, str] | None:
    if not is_live(promotion):
        return RejectionReason.INACTIVE, f"status={promotion.status} is_active={promotion.is_active}"
    if promotion.requires_coupon:
        return RejectionReason.REQUIRES_COUPON, "only applies through a coupon"
    if context.now < promotion.start_date:
        return RejectionReason.NOT_STARTED, f"starts {promotion.start_date.isoformat()}"
    if promotion.end_date is not None and context.now > promotion.end_date:
        return RejectionReason.EXPIRED, f"ended {promotion.end_date.isoformat()}"

    is_held = (EntityKind.PROMOTION.value, promotion.id) in held
    if not is_held and promotion.max_usage is not None and promotion.usage_count >= promotion.max_usage:
        return RejectionReason.USAGE_EXCEEDED, f"{promotion.usage_count}/{promotion.max_usage} uses"
    if (
        not is_held
        and promotion.max_usage_per_customer is not None
        and context.customer.id
        and customer_usage is not None
    ):
        used = customer_usage(EntityKind.PROMOTION, promotion.id)
        if used >= promotion.max_usage_per_customer:
            return (
                RejectionReason.PER_CUSTOMER_USAGE_EXCEEDED,
                f"{used}/{promotion.max_usage_per_customer} uses by customer",
            )

    if not customer_group_allowed(promotion, context.customer):
        return RejectionReason.CUSTOMER_INELIGIBLE, "customer group not eligible"
    if promotion.min_order_amount is not None and context.subtotal < promotion.min_order_amount:
        return RejectionReason.MIN_ORDER_NOT_MET, f"subtotal {context.subtotal} < {promotion.min_order_amount}"

    failed = first_failure(promotion.rules, context)
    if failed is not None:
        return RejectionReason.RULES_NOT_MET, f"rule {failed.name or failed.id} ({failed.condition_type} {failed.operator})"
    return None


def filter_candidates(
    promotions: Iterable[Promotion],
    context: PricingContext,
    held: Collection[tuple[str, str]] = frozenset(),
    customer_usage: CustomerUsageLookup | None = None,
) -> CandidateResolution:
    """
    Keep the promotions eligible for ``context``, ordered by rank.

    Args:
        held: (kind, id) pairs the cart already holds reservations on; their
            usage caps are not re-checked, the slot is already theirs.
        customer_usage: per-customer usage lookup; per-customer caps are only
            checked when it is given and the customer is identified.

    Raises:
        InvalidRuleError: a rule of one of the promotions is malformed.
    """
    resolution = CandidateResolution()
    seen: set[str] = set()
    for promotion in promotions:
        if promotion.id in seen:
            continue
        seen.add(promotion.id)
        rejection = _rejection(promotion, context, held, customer_usage)
        if rejection is None:
            resolution.eligible.append(promotion)
            continue
        reason, detail = rejection
        logger.debug("Promotion %s not eligible: %s (%s)", promotion.id, reason.value, detail)
        resolution.rejected.append(
            IneligibleCandidate(kind=EntityKind.PROMOTION, source_id=promotion.id, reason=reason, detail=detail)
        )
    resolution.eligible.sort(key=lambda p: (-p.priority, p.created_at, p.id))
    return resolution


def resolve_candidates(
    catalog: PromotionCatalog,
    scopes: Iterable[str],
    context: PricingContext,
    held: Collection[tuple[str, str]] = frozenset(),
    customer_usage: CustomerUsageLookup | None = None,
) -> CandidateResolution:
    """Query every scope for the context's merchant and filter the union."""
    promotions: list[Promotion] = []
    for scope in scopes:
        promotions.extend(catalog.find_active_promotions(scope, context.merchant_id))
    return filter_candidates(promotions, context, held, customer_usage)
