"""
Order and payment intent state machines.

Transitions are named operations; each one lists the only states it may be
applied from. ``Fulfilled`` and ``Cancelled`` have no outgoing transitions.
"""
from enum import Enum
from typing import Dict, FrozenSet, Tuple


class OrderState(str, Enum):
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


class IntentState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# transition name -> (allowed predecessors, target)
ORDER_TRANSITIONS: Dict[str, Tuple[FrozenSet[OrderState], OrderState]] = {
    "mark_awaiting_payment": (frozenset({OrderState.CREATED}), OrderState.AWAITING_PAYMENT),
    "reopen_for_payment": (frozenset({OrderState.PAYMENT_FAILED}), OrderState.AWAITING_PAYMENT),
    "mark_paid": (frozenset({OrderState.AWAITING_PAYMENT}), OrderState.PAID),
    "mark_payment_failed": (frozenset({OrderState.AWAITING_PAYMENT}), OrderState.PAYMENT_FAILED),
    "mark_fulfilled": (frozenset({OrderState.PAID}), OrderState.FULFILLED),
    "cancel": (
        frozenset({OrderState.CREATED, OrderState.AWAITING_PAYMENT, OrderState.PAYMENT_FAILED}),
        OrderState.CANCELLED,
    ),
}

PAYABLE_ORDER_STATES = frozenset(
    {OrderState.CREATED, OrderState.AWAITING_PAYMENT, OrderState.PAYMENT_FAILED}
)

OUTCOME_TO_INTENT_STATE = {
    PaymentOutcome.SUCCEEDED: IntentState.SUCCEEDED,
    PaymentOutcome.FAILED: IntentState.FAILED,
}
