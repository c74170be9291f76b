"""Database package for the commerce backend."""
from .connection import (
    create_engine_from_settings,
    create_session_factory,
    dispose_engine,
    init_db,
)
from .models import Base, Order, PaymentIntent, ReconciliationIssue, User

__all__ = [
    "Base",
    "Order",
    "PaymentIntent",
    "ReconciliationIssue",
    "User",
    "create_engine_from_settings",
    "create_session_factory",
    "dispose_engine",
    "init_db",
]
