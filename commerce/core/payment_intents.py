"""
Payment Intent Processor: the only writer of payment intent records.

Flow for ``create_intent``:
1. Check the order is payable
2. Return the intent already recorded for (order, idempotency key), if any
3. Insert a ``pending`` intent (the partial unique index admits one live intent per order)
4. Ask the provider for a payment intent and record its reference
5. Drive the order to ``awaiting_payment``

``reconcile`` applies a provider outcome with a single conditional update
(only while the intent is still ``pending``) and then drives the order.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce.core.errors import (
    ConflictingIntent,
    InvalidTransition,
    OrderNotPayable,
    PaymentProviderError,
    ReconciliationConflict,
    StorageConflict,
    UnknownIntent,
)
from commerce.core.ledger import OrderLedger, as_uuid, utcnow
from commerce.core.states import (
    OUTCOME_TO_INTENT_STATE,
    PAYABLE_ORDER_STATES,
    IntentState,
    OrderState,
    PaymentOutcome,
)
from commerce.database.models import Order, PaymentIntent, ReconciliationIssue
from commerce.integrations.stripe_client import StripeClient, StripeError, StripeErrorType
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    intent: PaymentIntent
    applied: bool


class PaymentIntentProcessor:
    """
    Creates and reconciles payment attempts against orders.

    Order state changes go through the injected ``OrderLedger``; this class
    never writes order rows itself.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: OrderLedger,
        provider: StripeClient,
    ):
        """
        Initialize payment intent processor.

        Args:
            session_factory: Factory producing database sessions
            ledger: Order ledger used for every order transition
            provider: Payment provider client
        """
        self.session_factory = session_factory
        self.ledger = ledger
        self.provider = provider

    async def create_intent(
        self, order_id: str | uuid.UUID, idempotency_key: str
    ) -> PaymentIntent:
        """
        Create a payment intent for an order, or return the one recorded for this key.

        Args:
            order_id: Order to collect funds for
            idempotency_key: Caller-supplied key, unique per order

        Returns:
            PaymentIntent: The intent, amount equal to the order total

        Raises:
            OrderNotFound: If the order does not exist
            OrderNotPayable: If the order is not created, awaiting payment or payment failed
            ConflictingIntent: If another live intent exists for the order
            PaymentProviderError: If the provider did not acknowledge the intent
            StorageConflict: If the insert conflicted for an unidentifiable reason
        """
        order = await self.ledger.get(order_id)
        if OrderState(order.state) not in PAYABLE_ORDER_STATES:
            raise OrderNotPayable(f"Order {order.id} is '{order.state}' and cannot take a payment")

        existing = await self._find_by_key(order.id, idempotency_key)
        if existing is not None:
            logger.info(
                "payment_intent_idempotent_return",
                intent_id=str(existing.id),
                order_id=str(order.id),
            )
            metrics.record_payment_intent("replayed")
            return await self._resume(existing, order)

        now = utcnow()
        intent = PaymentIntent(
            id=uuid.uuid4(),
            order_id=order.id,
            idempotency_key=idempotency_key,
            amount_cents=order.total_cents,
            currency=order.currency,
            state=IntentState.PENDING.value,
            created_at=now,
            updated_at=now,
        )

        async with self.session_factory() as db:
            db.add(intent)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return await self._resolve_insert_conflict(order, idempotency_key)

        logger.info(
            "payment_intent_created",
            intent_id=str(intent.id),
            order_id=str(order.id),
            amount_cents=intent.amount_cents,
        )
        metrics.record_payment_intent("created")
        return await self._resume(intent, order)

    async def _resolve_insert_conflict(self, order: Order, idempotency_key: str) -> PaymentIntent:
        winner = await self._find_by_key(order.id, idempotency_key)
        if winner is not None:
            logger.info("payment_intent_create_race_lost", intent_id=str(winner.id))
            metrics.record_payment_intent("replayed")
            return await self._resume(winner, order)

        live = await self.find_live_intent(order.id)
        if live is not None:
            logger.warning(
                "payment_intent_conflict",
                order_id=str(order.id),
                live_intent_id=str(live.id),
            )
            metrics.record_payment_intent("conflict")
            raise ConflictingIntent(
                f"Order {order.id} already has live payment intent {live.id}"
            )

        raise StorageConflict(
            f"Payment intent insert for order {order.id} conflicted; retry the request"
        )

    async def _resume(self, intent: PaymentIntent, order: Order) -> PaymentIntent:
        """Finish any step a pending intent has not completed yet."""
        if intent.state != IntentState.PENDING.value:
            return intent

        if intent.provider_reference is None:
            intent = await self._acknowledge(intent, order)

        await self._drive_order_to_awaiting_payment(order.id)
        return intent

    async def _acknowledge(self, intent: PaymentIntent, order: Order) -> PaymentIntent:
        """
        Register the intent with the provider and record its reference.

        The provider idempotency key is derived from the intent's own key, so
        re-issuing the call after a crash returns the same provider intent.
        """
        try:
            provider_intent = await self.provider.create_payment_intent(
                amount_cents=intent.amount_cents,
                currency=intent.currency,
                idempotency_key=f"{intent.order_id}:{intent.idempotency_key}",
                metadata={
                    "order_id": str(intent.order_id),
                    "intent_id": str(intent.id),
                    "user_id": str(order.user_id),
                },
            )
        except StripeError as e:
            metrics.record_payment_intent("provider_error")
            if e.error_type == StripeErrorType.PERMANENT:
                await self._fail_unacknowledged(intent, str(e))
                raise PaymentProviderError(f"Payment provider rejected intent: {e}") from e

            logger.warning(
                "payment_intent_provider_unavailable",
                intent_id=str(intent.id),
                error=str(e),
            )
            raise PaymentProviderError(
                f"Payment provider unavailable, retry with the same idempotency key: {e}"
            ) from e

        stmt = (
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent.id,
                PaymentIntent.provider_reference.is_(None),
            )
            .values(provider_reference=provider_intent.id, updated_at=utcnow())
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

        acknowledged = await self.get_intent(intent.id)
        logger.info(
            "payment_intent_acknowledged",
            intent_id=str(intent.id),
            provider_reference=acknowledged.provider_reference,
        )
        return acknowledged

    async def _fail_unacknowledged(self, intent: PaymentIntent, error_message: str) -> None:
        stmt = (
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent.id,
                PaymentIntent.state == IntentState.PENDING.value,
                PaymentIntent.provider_reference.is_(None),
            )
            .values(
                state=IntentState.FAILED.value,
                error_message=error_message,
                updated_at=utcnow(),
            )
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

        logger.error(
            "payment_intent_provider_rejected",
            intent_id=str(intent.id),
            error=error_message,
        )

    async def _drive_order_to_awaiting_payment(self, order_id: uuid.UUID) -> None:
        order = await self.ledger.get(order_id)
        try:
            if order.state == OrderState.CREATED.value:
                await self.ledger.mark_awaiting_payment(order_id)
            elif order.state == OrderState.PAYMENT_FAILED.value:
                await self.ledger.reopen_for_payment(order_id)
        except InvalidTransition as exc:
            # An identical concurrent request already moved it.
            if exc.current != OrderState.AWAITING_PAYMENT.value:
                raise

    async def reconcile(
        self, provider_reference: str, outcome: PaymentOutcome | str
    ) -> ReconcileResult:
        """
        Apply a provider outcome to the matching intent and its order.

        Re-delivery of an outcome that is already recorded is a no-op.

        Args:
            provider_reference: Provider-assigned intent reference
            outcome: ``succeeded`` or ``failed``

        Returns:
            ReconcileResult: The intent and whether this call changed it

        Raises:
            UnknownIntent: If no intent carries this reference
            ReconciliationConflict: If the outcome contradicts the recorded one,
                or the order refuses the resulting transition
        """
        outcome = PaymentOutcome(outcome)
        intent = await self._find_by_reference(provider_reference)
        if intent is None:
            logger.warning(
                "reconcile_unknown_intent",
                provider_reference=provider_reference,
                outcome=outcome.value,
            )
            raise UnknownIntent(f"No payment intent with provider reference {provider_reference}")

        target = OUTCOME_TO_INTENT_STATE[outcome]
        stmt = (
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent.id,
                PaymentIntent.state == IntentState.PENDING.value,
            )
            .values(state=target.value, updated_at=utcnow())
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        current = await self.get_intent(intent.id)

        if result.rowcount == 0:
            if current.state == target.value:
                logger.info(
                    "reconcile_duplicate_outcome",
                    intent_id=str(current.id),
                    outcome=outcome.value,
                )
                await self._heal_order(current, outcome)
                return ReconcileResult(intent=current, applied=False)

            await self._record_conflict(
                current,
                outcome,
                kind="contradictory_outcome",
                details={"settled_state": current.state},
            )
            raise ReconciliationConflict(
                f"Intent {current.id} already settled as '{current.state}', "
                f"provider now reports '{outcome.value}'",
                provider_reference=provider_reference,
                kind="contradictory_outcome",
            )

        logger.info(
            "payment_intent_settled",
            intent_id=str(current.id),
            order_id=str(current.order_id),
            state=current.state,
        )

        try:
            if outcome is PaymentOutcome.SUCCEEDED:
                await self.ledger.mark_paid(current.order_id)
            else:
                await self._fail_order(current.order_id)
        except InvalidTransition as exc:
            if (
                outcome is PaymentOutcome.FAILED
                and exc.current == OrderState.CANCELLED.value
            ):
                # A failed payment on an abandoned order contradicts nothing.
                logger.info(
                    "reconcile_failure_for_cancelled_order",
                    intent_id=str(current.id),
                    order_id=str(current.order_id),
                )
                return ReconcileResult(intent=current, applied=True)

            await self._record_conflict(
                current,
                outcome,
                kind="order_transition_rejected",
                details={"order_id": str(current.order_id), "order_state": exc.current},
            )
            raise ReconciliationConflict(
                f"Order {current.order_id} in state '{exc.current}' refused the "
                f"'{outcome.value}' outcome of intent {current.id}",
                provider_reference=provider_reference,
                kind="order_transition_rejected",
            ) from exc

        return ReconcileResult(intent=current, applied=True)

    async def _heal_order(self, intent: PaymentIntent, outcome: PaymentOutcome) -> None:
        """Re-apply an order transition an earlier delivery may not have completed."""
        order = await self.ledger.get(intent.order_id)
        if order.state != OrderState.AWAITING_PAYMENT.value:
            return

        try:
            if outcome is PaymentOutcome.SUCCEEDED:
                await self.ledger.mark_paid(order.id)
            else:
                await self._fail_order(order.id)
        except InvalidTransition as exc:
            logger.info(
                "reconcile_heal_skipped",
                order_id=str(order.id),
                current_state=exc.current,
            )

    async def _fail_order(self, order_id: uuid.UUID) -> None:
        """
        Record a failed payment on the order unless another intent is still live.

        An order with a live intent stays ``awaiting_payment``. A new intent can
        be created between the live-intent check and the transition, so the
        check is repeated afterwards and the order reopened if needed.

        Raises:
            InvalidTransition: If the order is not awaiting payment
        """
        live = await self.find_live_intent(order_id)
        if live is not None:
            logger.info(
                "reconcile_order_kept_awaiting_payment",
                order_id=str(order_id),
                live_intent_id=str(live.id),
            )
            return

        await self.ledger.mark_payment_failed(order_id)

        live = await self.find_live_intent(order_id)
        if live is None:
            return

        logger.info(
            "reconcile_order_reopened_for_live_intent",
            order_id=str(order_id),
            live_intent_id=str(live.id),
        )
        try:
            await self._drive_order_to_awaiting_payment(order_id)
        except InvalidTransition as exc:
            logger.warning(
                "reconcile_reopen_skipped",
                order_id=str(order_id),
                current_state=exc.current,
            )

    async def _record_conflict(
        self,
        intent: PaymentIntent,
        outcome: PaymentOutcome,
        kind: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        issue = ReconciliationIssue(
            intent_id=intent.id,
            provider_reference=intent.provider_reference or "",
            kind=kind,
            recorded_state=intent.state,
            reported_outcome=outcome.value,
            details=details,
            created_at=utcnow(),
        )
        async with self.session_factory() as db:
            db.add(issue)
            await db.commit()

        logger.error(
            "reconciliation_conflict",
            intent_id=str(intent.id),
            provider_reference=intent.provider_reference,
            kind=kind,
            recorded_state=intent.state,
            reported_outcome=outcome.value,
        )
        metrics.record_reconciliation_conflict(kind)

    async def get_intent(self, intent_id: str | uuid.UUID) -> PaymentIntent:
        async with self.session_factory() as db:
            intent = await db.get(PaymentIntent, as_uuid(intent_id))

        if intent is None:
            raise UnknownIntent(f"Payment intent {intent_id} not found")
        return intent

    async def _find_by_key(
        self, order_id: uuid.UUID, idempotency_key: str
    ) -> Optional[PaymentIntent]:
        stmt = select(PaymentIntent).where(
            PaymentIntent.order_id == order_id,
            PaymentIntent.idempotency_key == idempotency_key,
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def _find_by_reference(self, provider_reference: str) -> Optional[PaymentIntent]:
        stmt = select(PaymentIntent).where(
            PaymentIntent.provider_reference == provider_reference
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def find_live_intent(self, order_id: str | uuid.UUID) -> Optional[PaymentIntent]:
        """Return the order's intent that is not ``failed``, if any."""
        stmt = select(PaymentIntent).where(
            PaymentIntent.order_id == as_uuid(order_id),
            PaymentIntent.state != IntentState.FAILED.value,
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def list_for_order(self, order_id: str | uuid.UUID) -> List[PaymentIntent]:
        stmt = (
            select(PaymentIntent)
            .where(PaymentIntent.order_id == as_uuid(order_id))
            .order_by(PaymentIntent.created_at)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_issues(self, limit: int = 100) -> List[ReconciliationIssue]:
        stmt = (
            select(ReconciliationIssue)
            .order_by(ReconciliationIssue.created_at.desc(), ReconciliationIssue.id.desc())
            .limit(limit)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())
