"""External integrations: payment provider and session store."""
from .session_store import RedisSessionStore
from .stripe_client import StripeClient, StripeError, StripeErrorType

__all__ = ["RedisSessionStore", "StripeClient", "StripeError", "StripeErrorType"]
