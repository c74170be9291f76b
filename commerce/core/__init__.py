"""Order and payment lifecycle core."""
from .identity import UserDirectory
from .ledger import LineItem, OrderLedger, compute_total
from .payment_intents import PaymentIntentProcessor, ReconcileResult
from .sessions import SessionContextResolver, SessionRecord, UserIdentity
from .states import IntentState, OrderState, PaymentOutcome

__all__ = [
    "IntentState",
    "LineItem",
    "OrderLedger",
    "OrderState",
    "PaymentIntentProcessor",
    "PaymentOutcome",
    "ReconcileResult",
    "SessionContextResolver",
    "SessionRecord",
    "UserDirectory",
    "UserIdentity",
    "compute_total",
]
