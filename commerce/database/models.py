"""SQLAlchemy database models for the order and payment lifecycle."""
import uuid
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

ORDER_STATES = (
    "created",
    "awaiting_payment",
    "paid",
    "fulfilled",
    "cancelled",
    "payment_failed",
)
INTENT_STATES = ("pending", "succeeded", "failed")


def _in_clause(column: str, values: tuple) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    Identity records.

    Created at registration and read-only afterwards; orders reference
    users by identifier only.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        """String representation of User."""
        return f"<User(id={self.id}, email={self.email})>"


class Order(Base):
    """
    Orders table.

    Line items are stored as a JSON document and never change after insert;
    only ``state`` and ``updated_at`` move. ``(user_id, idempotency_key)`` is
    unique so concurrent creates converge on one row.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    line_items: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency_key"),
        CheckConstraint("total_cents >= 0", name="non_negative_total"),
        CheckConstraint(_in_clause("state", ORDER_STATES), name="valid_order_state"),
        Index("idx_orders_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, user_id={self.user_id}, "
            f"total={self.total_cents}, state={self.state})>"
        )


class PaymentIntent(Base):
    """
    Payment intents table.

    One row per attempt to collect funds for an order. The partial unique
    index on ``order_id`` admits at most one intent per order outside the
    ``failed`` state.
    """

    __tablename__ = "payment_intents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    provider_reference: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    state: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "idempotency_key", name="uq_intents_order_idempotency_key"),
        CheckConstraint("amount_cents >= 0", name="non_negative_amount"),
        CheckConstraint(_in_clause("state", INTENT_STATES), name="valid_intent_state"),
        Index(
            "uq_intents_one_live_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("state <> 'failed'"),
            sqlite_where=text("state <> 'failed'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of PaymentIntent."""
        return (
            f"<PaymentIntent(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount_cents}, state={self.state})>"
        )


class ReconciliationIssue(Base):
    """
    Operator review queue.

    A row is written whenever a provider notification contradicts what is
    already recorded. Rows are never resolved automatically.
    """

    __tablename__ = "reconciliation_issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    intent_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    recorded_state: Mapped[str] = mapped_column(String(32), nullable=False)
    reported_outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    def __repr__(self) -> str:
        """String representation of ReconciliationIssue."""
        return (
            f"<ReconciliationIssue(id={self.id}, intent_id={self.intent_id}, "
            f"kind={self.kind})>"
        )
