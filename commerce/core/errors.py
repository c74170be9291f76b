"""Error taxonomy for the order and payment lifecycle."""
from typing import Any


class CommerceError(Exception):
    """Base exception for commerce errors."""

    code = "commerce_error"


class Unauthenticated(CommerceError):
    """Raised when a session token is missing, unknown or expired."""

    code = "unauthenticated"


class Unauthorized(CommerceError):
    """Raised when the caller does not own the order it is acting on."""

    code = "unauthorized"


class InvalidCredentials(CommerceError):
    code = "invalid_credentials"


class EmptyOrder(CommerceError):
    code = "empty_order"


class InvalidQuantity(CommerceError):
    code = "invalid_quantity"


class OrderNotFound(CommerceError):
    code = "order_not_found"


class InvalidTransition(CommerceError):
    """Raised when an order is not in an allowed predecessor state."""

    code = "invalid_transition"

    def __init__(self, order_id: Any, current: str, transition: str):
        super().__init__(
            f"Order {order_id} cannot {transition.replace('_', ' ')} from state '{current}'"
        )
        self.order_id = order_id
        self.current = current
        self.transition = transition


class OrderNotPayable(CommerceError):
    code = "order_not_payable"


class ConflictingIntent(CommerceError):
    """Raised when another live payment intent already exists for the order."""

    code = "conflicting_intent"


class UnknownIntent(CommerceError):
    code = "unknown_intent"


class ReconciliationConflict(CommerceError):
    """
    Raised when a provider notification contradicts the recorded outcome.

    Never resolved automatically; the issue is persisted for operator review.
    """

    code = "reconciliation_conflict"

    def __init__(self, message: str, provider_reference: str, kind: str):
        super().__init__(message)
        self.provider_reference = provider_reference
        self.kind = kind


class InvalidWebhookSignature(CommerceError):
    code = "invalid_webhook_signature"


class StorageConflict(CommerceError):
    """Raised when a uniqueness or precondition violation cannot be resolved; retryable."""

    code = "storage_conflict"


class PaymentProviderError(CommerceError):
    code = "payment_provider_error"
