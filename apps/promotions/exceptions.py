"""
Promotion engine errors.

Exceptions are reserved for conditions the caller cannot treat as a routine
outcome: broken promotion configuration, contended usage slots and
unavailable collaborators. Routine outcomes (an ineligible candidate, an
unusable coupon) are plain values recorded on the priced result.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .constants import EntityKind

# ===============================================================================
# EXCEPTIONS
# ===============================================================================


class PricingError(Exception):
    """Base exception for the pricing engine"""


class ConfigurationError(PricingError):
    """A promotion, rule, action or coupon record is malformed"""

    def __init__(self, message: str, source_id: str | None = None):
        self.source_id = source_id
        super().__init__(f"{message} (source={source_id})" if source_id else message)


class InvalidRuleError(ConfigurationError):
    """Unknown condition type, unsupported operator or malformed rule/action value"""


class UsageReservationFailed(PricingError):
    """A usage slot could not be acquired because a cap is already reached"""

    def __init__(self, entity_kind: EntityKind, entity_id: str, per_customer: bool = False):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.per_customer = per_customer
        scope = "per-customer" if per_customer else "global"
        super().__init__(f"{scope} usage cap reached for {entity_kind.value} {entity_id}")


class UpstreamCollaboratorError(PricingError):
    """A catalog or usage store call failed; the whole pricing call must be retried"""


class TransientStoreError(PricingError):
    """Short-lived contention in the usage store (lock timeout, serialization failure)"""


# ===============================================================================
# COUPON ERRORS (returned, never raised)
# ===============================================================================


class CouponErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    INACTIVE = "Inactive"
    EXPIRED = "Expired"
    USAGE_EXCEEDED = "UsageExceeded"
    PER_CUSTOMER_USAGE_EXCEEDED = "PerCustomerUsageExceeded"
    MIN_ORDER_NOT_MET = "MinOrderNotMet"
    RESTRICTION_VIOLATED = "RestrictionViolated"


@dataclass(frozen=True)
class CouponError:
    """
    Reason a submitted coupon code cannot be used.

    Attributes:
        kind: Machine-readable error kind for user-facing messaging.
        code: The normalized code the customer submitted.
        message: Human-readable explanation.
        restriction: For RESTRICTION_VIOLATED, the restriction that failed.
    """

    kind: CouponErrorKind
    code: str
    message: str = ""
    restriction: str | None = None
