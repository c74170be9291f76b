"""
Race condition tests for concurrent order and payment requests.

Tests idempotency and single-live-intent guarantees under concurrent load.
"""
import asyncio
import uuid
from typing import Any, List

import pytest

from commerce.core.errors import ConflictingIntent, ReconciliationConflict
from commerce.core.ledger import LineItem, OrderLedger
from commerce.core.payment_intents import PaymentIntentProcessor, ReconcileResult
from commerce.core.states import OrderState, PaymentOutcome
from commerce.database.models import Order


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_order_creates_same_key(self, ledger: OrderLedger) -> None:
        """Concurrent creates with one key converge on a single order."""
        user_id = uuid.uuid4()

        results = await asyncio.gather(
            *[ledger.create(user_id, [LineItem("A", 2, 500)], "k1") for _ in range(10)]
        )

        assert len({order.id for order in results}) == 1
        assert len(await ledger.list_for_user(user_id)) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_order_creates_different_keys(self, ledger: OrderLedger) -> None:
        user_id = uuid.uuid4()

        results = await asyncio.gather(
            *[ledger.create(user_id, [LineItem("A", 1, 100)], f"k{i}") for i in range(5)]
        )

        assert len({order.id for order in results}) == 5

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_intents_same_key(
        self,
        processor: PaymentIntentProcessor,
        ledger: OrderLedger,
        created_order: Order,
    ) -> None:
        """Concurrent requests with one key all observe the same intent."""
        results = await asyncio.gather(
            *[processor.create_intent(created_order.id, "i1") for _ in range(10)]
        )

        assert len({intent.id for intent in results}) == 1
        assert len(await processor.list_for_order(created_order.id)) == 1
        assert (await ledger.get(created_order.id)).state == OrderState.AWAITING_PAYMENT.value

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_intents_different_keys(
        self, processor: PaymentIntentProcessor, created_order: Order
    ) -> None:
        """At most one live intent per order, whatever the interleaving."""
        results: List[Any] = await asyncio.gather(
            *[processor.create_intent(created_order.id, f"i{i}") for i in range(5)],
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        conflicts = [r for r in results if isinstance(r, ConflictingIntent)]

        assert len(successes) == 1
        assert len(conflicts) == 4
        assert len(await processor.list_for_order(created_order.id)) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_webhooks(
        self,
        processor: PaymentIntentProcessor,
        ledger: OrderLedger,
        created_order: Order,
    ) -> None:
        """Exactly one of several identical deliveries applies the outcome."""
        intent = await processor.create_intent(created_order.id, "i1")

        results: List[ReconcileResult] = await asyncio.gather(
            *[
                processor.reconcile(intent.provider_reference, PaymentOutcome.SUCCEEDED)
                for _ in range(5)
            ]
        )

        assert sum(1 for r in results if r.applied) == 1
        assert (await ledger.get(created_order.id)).state == OrderState.PAID.value

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_contradictory_webhooks(
        self,
        processor: PaymentIntentProcessor,
        ledger: OrderLedger,
        created_order: Order,
    ) -> None:
        """The first outcome wins; the other is recorded as a conflict."""
        intent = await processor.create_intent(created_order.id, "i1")

        results: List[Any] = await asyncio.gather(
            processor.reconcile(intent.provider_reference, PaymentOutcome.SUCCEEDED),
            processor.reconcile(intent.provider_reference, PaymentOutcome.FAILED),
            return_exceptions=True,
        )

        applied = [r for r in results if isinstance(r, ReconcileResult)]
        conflicts = [r for r in results if isinstance(r, ReconciliationConflict)]
        assert len(applied) == 1
        assert len(conflicts) == 1

        winner = applied[0].intent.state
        expected = OrderState.PAID if winner == "succeeded" else OrderState.PAYMENT_FAILED
        assert (await ledger.get(created_order.id)).state == expected.value
        assert len(await processor.list_issues()) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancel_races_payment_success(
        self,
        processor: PaymentIntentProcessor,
        ledger: OrderLedger,
        created_order: Order,
    ) -> None:
        """An order never ends up both cancelled and paid."""
        intent = await processor.create_intent(created_order.id, "i1")

        await asyncio.gather(
            ledger.cancel(created_order.id),
            processor.reconcile(intent.provider_reference, PaymentOutcome.SUCCEEDED),
            return_exceptions=True,
        )

        state = (await ledger.get(created_order.id)).state
        assert state in (OrderState.CANCELLED.value, OrderState.PAID.value)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_new_intent_created_while_failure_is_applied(
        self,
        processor: PaymentIntentProcessor,
        ledger: OrderLedger,
        created_order: Order,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """An order with a live intent ends up awaiting payment, not payment_failed."""
        first = await processor.create_intent(created_order.id, "i1")
        mark_payment_failed = ledger.mark_payment_failed
        second_intents: List[Any] = []

        async def create_second_intent_first(order_id: uuid.UUID) -> Order:
            # The retry lands after the first intent failed but before the order moved.
            second_intents.append(await processor.create_intent(order_id, "i2"))
            return await mark_payment_failed(order_id)

        monkeypatch.setattr(ledger, "mark_payment_failed", create_second_intent_first)

        await processor.reconcile(first.provider_reference, PaymentOutcome.FAILED)

        [second] = second_intents
        assert (await ledger.get(created_order.id)).state == OrderState.AWAITING_PAYMENT.value

        result = await processor.reconcile(second.provider_reference, PaymentOutcome.SUCCEEDED)

        assert result.applied is True
        assert (await ledger.get(created_order.id)).state == OrderState.PAID.value
        assert await processor.list_issues() == []
