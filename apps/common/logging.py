"""
Pricing evaluation log correlation.

Every price evaluation runs under an evaluation id kept in thread-local
storage. PricingContextFilter copies it (and the cart/customer it belongs to)
onto each log record so a single priceCart call can be followed through the
candidate resolver, discount calculator and usage ledger logs.

Usage:
    from apps.common.logging import evaluation_context

    with evaluation_context(cart_id="cart-42", customer_id="c-1") as evaluation_id:
        ...
"""

from __future__ import annotations

import contextlib
import logging
import threading
import uuid
from collections.abc import Generator
from typing import Any

# Thread-local storage for evaluation context
_evaluation_context = threading.local()

_CONTEXT_FIELDS = ("evaluation_id", "cart_id", "customer_id")


# =============================================================================
# EVALUATION CONTEXT FUNCTIONS
# =============================================================================


def set_evaluation_context(**kwargs: Any) -> None:
    """Set evaluation context for the current thread"""
    for key, value in kwargs.items():
        setattr(_evaluation_context, key, value)


def get_evaluation_context() -> dict[str, Any]:
    """Get evaluation context for the current thread"""
    return {
        "evaluation_id": getattr(_evaluation_context, "evaluation_id", "-"),
        "cart_id": getattr(_evaluation_context, "cart_id", None),
        "customer_id": getattr(_evaluation_context, "customer_id", None),
    }


def clear_evaluation_context() -> None:
    """Clear evaluation context for the current thread"""
    for attr in _CONTEXT_FIELDS:
        if hasattr(_evaluation_context, attr):
            delattr(_evaluation_context, attr)


@contextlib.contextmanager
def evaluation_context(cart_id: str | None = None, customer_id: str | None = None) -> Generator[str, None, None]:
    """
    Bind a fresh evaluation id for the duration of the block.

    Nested blocks keep the outer evaluation id so a pricing call made from
    inside another one logs under a single correlation id.
    """
    previous = get_evaluation_context()
    nested = previous["evaluation_id"] != "-"
    evaluation_id = previous["evaluation_id"] if nested else uuid.uuid4().hex[:12]
    set_evaluation_context(evaluation_id=evaluation_id, cart_id=cart_id, customer_id=customer_id)
    try:
        yield evaluation_id
    finally:
        if nested:
            set_evaluation_context(**previous)
        else:
            clear_evaluation_context()


# =============================================================================
# PRICING CONTEXT FILTER - Structured Logging with Evaluation Correlation
# =============================================================================


class PricingContextFilter(logging.Filter):
    """
    Add evaluation id and cart context to log records.

    Records that already carry one of the fields (passed via ``extra``)
    keep their own value.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_evaluation_context()
        for key, value in context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True
