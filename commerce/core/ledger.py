"""
Order Ledger: the only writer of order records.

Every state change goes through a named transition that is applied as one
conditional UPDATE (``WHERE state IN predecessors``). A transition that
matches no row is re-read to tell a missing order apart from a refused
transition; nothing is ever overwritten blindly.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce.core.errors import (
    EmptyOrder,
    InvalidQuantity,
    InvalidTransition,
    OrderNotFound,
    StorageConflict,
)
from commerce.core.states import ORDER_TRANSITIONS, OrderState
from commerce.database.models import Order
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


@dataclass(frozen=True)
class LineItem:
    """One ordered SKU. Immutable once the order is written."""

    sku: str
    quantity: int
    unit_price_cents: int

    @property
    def subtotal_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    def to_document(self) -> Dict[str, Any]:
        return {
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "LineItem":
        return cls(
            sku=document["sku"],
            quantity=int(document["quantity"]),
            unit_price_cents=int(document["unit_price_cents"]),
        )


def compute_total(line_items: Iterable[LineItem]) -> int:
    return sum(item.subtotal_cents for item in line_items)


class OrderLedger:
    """
    Owns the durable representation of orders and enforces the order state machine.

    Receives its session factory at construction; each operation runs in its
    own short transaction touching a single order row.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], currency: str = "usd"):
        """
        Initialize the ledger.

        Args:
            session_factory: Factory producing database sessions
            currency: Settlement currency stamped on new orders
        """
        self.session_factory = session_factory
        self.currency = currency.lower()

    @staticmethod
    def _validate_line_items(line_items: List[LineItem]) -> None:
        if not line_items:
            raise EmptyOrder("An order needs at least one line item")

        for item in line_items:
            if item.quantity <= 0:
                raise InvalidQuantity(
                    f"Quantity for SKU {item.sku} must be positive, got {item.quantity}"
                )

    async def create(
        self,
        user_id: str | uuid.UUID,
        line_items: Iterable[LineItem],
        idempotency_key: str,
    ) -> Order:
        """
        Create an order, or return the one already recorded for this idempotency key.

        Args:
            user_id: Owning user
            line_items: Ordered items
            idempotency_key: Caller-supplied key, unique per user

        Returns:
            Order: The new order in state ``created``, or the existing one unchanged

        Raises:
            EmptyOrder: If no line items were given
            InvalidQuantity: If any quantity is not positive
            StorageConflict: If the insert conflicted but no winner can be read back
        """
        items = list(line_items)
        self._validate_line_items(items)
        user_uuid = as_uuid(user_id)
        total_cents = compute_total(items)

        existing = await self.find_by_key(user_uuid, idempotency_key)
        if existing is not None:
            self._log_replay(existing, items)
            metrics.record_order_created("replayed")
            return existing

        now = utcnow()
        order = Order(
            id=uuid.uuid4(),
            user_id=user_uuid,
            idempotency_key=idempotency_key,
            line_items=[item.to_document() for item in items],
            total_cents=total_cents,
            currency=self.currency,
            state=OrderState.CREATED.value,
            created_at=now,
            updated_at=now,
        )

        async with self.session_factory() as db:
            db.add(order)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info(
                    "order_create_race_lost",
                    user_id=str(user_uuid),
                    idempotency_key=idempotency_key,
                )
                winner = await self.find_by_key(user_uuid, idempotency_key)
                if winner is None:
                    raise StorageConflict(
                        f"Order insert for key {idempotency_key} conflicted; retry the request"
                    )
                metrics.record_order_created("replayed")
                return winner

        logger.info(
            "order_created",
            order_id=str(order.id),
            user_id=str(user_uuid),
            total_cents=total_cents,
            line_items=len(items),
        )
        metrics.record_order_created("created")
        return order

    @staticmethod
    def _log_replay(existing: Order, items: List[LineItem]) -> None:
        stored = [LineItem.from_document(doc) for doc in existing.line_items]
        if stored != items:
            logger.warning(
                "order_idempotency_payload_mismatch",
                order_id=str(existing.id),
                idempotency_key=existing.idempotency_key,
            )
        else:
            logger.info("order_idempotent_return", order_id=str(existing.id))

    async def get(self, order_id: str | uuid.UUID) -> Order:
        async with self.session_factory() as db:
            order = await db.get(Order, as_uuid(order_id))

        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def find_by_key(
        self, user_id: str | uuid.UUID, idempotency_key: str
    ) -> Optional[Order]:
        stmt = select(Order).where(
            Order.user_id == as_uuid(user_id),
            Order.idempotency_key == idempotency_key,
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str | uuid.UUID, limit: int = 100) -> List[Order]:
        stmt = (
            select(Order)
            .where(Order.user_id == as_uuid(user_id))
            .order_by(Order.created_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def _transition(self, order_id: str | uuid.UUID, transition: str) -> Order:
        """
        Apply a named transition as a compare-and-set on the order's state.

        Raises:
            OrderNotFound: If the order does not exist
            InvalidTransition: If the current state is not an allowed predecessor
        """
        predecessors, target = ORDER_TRANSITIONS[transition]
        order_uuid = as_uuid(order_id)

        stmt = (
            update(Order)
            .where(
                Order.id == order_uuid,
                Order.state.in_([state.value for state in predecessors]),
            )
            .values(state=target.value, updated_at=utcnow())
        )

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            order = await db.get(Order, order_uuid) if result.rowcount == 1 else None
            await db.commit()

        if order is None:
            current = await self.get(order_uuid)
            logger.warning(
                "order_transition_rejected",
                order_id=str(order_uuid),
                transition=transition,
                current_state=current.state,
            )
            metrics.record_order_transition(transition, "rejected")
            raise InvalidTransition(order_uuid, current.state, transition)

        logger.info(
            "order_transitioned",
            order_id=str(order_uuid),
            transition=transition,
            state=order.state,
        )
        metrics.record_order_transition(transition, "applied")
        return order

    async def mark_awaiting_payment(self, order_id: str | uuid.UUID) -> Order:
        return await self._transition(order_id, "mark_awaiting_payment")

    async def reopen_for_payment(self, order_id: str | uuid.UUID) -> Order:
        """Move a ``payment_failed`` order back to ``awaiting_payment`` for a new attempt."""
        return await self._transition(order_id, "reopen_for_payment")

    async def mark_paid(self, order_id: str | uuid.UUID) -> Order:
        return await self._transition(order_id, "mark_paid")

    async def mark_payment_failed(self, order_id: str | uuid.UUID) -> Order:
        return await self._transition(order_id, "mark_payment_failed")

    async def mark_fulfilled(self, order_id: str | uuid.UUID) -> Order:
        return await self._transition(order_id, "mark_fulfilled")

    async def cancel(self, order_id: str | uuid.UUID) -> Order:
        return await self._transition(order_id, "cancel")
