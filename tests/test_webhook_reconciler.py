"""
Unit tests for Stripe webhook verification and reconciliation.
"""
import json
import time

import pytest

from commerce.core.errors import InvalidWebhookSignature, ReconciliationConflict, UnknownIntent
from commerce.core.ledger import OrderLedger
from commerce.core.payment_intents import PaymentIntentProcessor
from commerce.core.states import IntentState, OrderState
from commerce.database.models import Order
from commerce.integrations.webhook_handler import WebhookReconciler

from .conftest import sign_payload, stripe_event


class TestWebhookReconciler:
    """Webhook signature checks and outcome forwarding."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_succeeded_event_marks_order_paid(
        self,
        reconciler: WebhookReconciler,
        processor: PaymentIntentProcessor,
        ledger: OrderLedger,
        created_order: Order,
    ) -> None:
        intent = await processor.create_intent(created_order.id, "i1")
        payload = stripe_event("payment_intent.succeeded", intent.provider_reference)

        result = await reconciler.handle(payload.encode(), sign_payload(payload))

        assert result["status"] == "processed"
        assert result["intent_id"] == str(intent.id)
        assert result["intent_state"] == IntentState.SUCCEEDED.value
        assert (await ledger.get(created_order.id)).state == OrderState.PAID.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_is_noop(
        self,
        reconciler: WebhookReconciler,
        processor: PaymentIntentProcessor,
        ledger: OrderLedger,
        created_order: Order,
    ) -> None:
        intent = await processor.create_intent(created_order.id, "i1")
        payload = stripe_event("payment_intent.payment_failed", intent.provider_reference)

        first = await reconciler.handle(payload.encode(), sign_payload(payload))
        second = await reconciler.handle(payload.encode(), sign_payload(payload))

        assert first["status"] == "processed"
        assert second["status"] == "noop"
        assert (await ledger.get(created_order.id)).state == OrderState.PAYMENT_FAILED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_contradictory_event_raises_conflict(
        self,
        reconciler: WebhookReconciler,
        processor: PaymentIntentProcessor,
        created_order: Order,
    ) -> None:
        intent = await processor.create_intent(created_order.id, "i1")
        succeeded = stripe_event("payment_intent.succeeded", intent.provider_reference)
        failed = stripe_event("payment_intent.payment_failed", intent.provider_reference)
        await reconciler.handle(succeeded.encode(), sign_payload(succeeded))

        with pytest.raises(ReconciliationConflict):
            await reconciler.handle(failed.encode(), sign_payload(failed))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_signature_never_reaches_processor(
        self,
        reconciler: WebhookReconciler,
        processor: PaymentIntentProcessor,
        ledger: OrderLedger,
        created_order: Order,
    ) -> None:
        intent = await processor.create_intent(created_order.id, "i1")
        payload = stripe_event("payment_intent.succeeded", intent.provider_reference)

        with pytest.raises(InvalidWebhookSignature):
            await reconciler.handle(payload.encode(), sign_payload(payload, secret="whsec_wrong"))

        assert (await processor.get_intent(intent.id)).state == IntentState.PENDING.value
        assert (await ledger.get(created_order.id)).state == OrderState.AWAITING_PAYMENT.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_signature(self, reconciler: WebhookReconciler) -> None:
        payload = stripe_event("payment_intent.succeeded", "pi_x")

        with pytest.raises(InvalidWebhookSignature):
            await reconciler.handle(payload.encode(), None)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_signature(self, reconciler: WebhookReconciler) -> None:
        payload = stripe_event("payment_intent.succeeded", "pi_x")
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidWebhookSignature):
            await reconciler.handle(payload.encode(), signature)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_intent(self, reconciler: WebhookReconciler) -> None:
        payload = stripe_event("payment_intent.succeeded", "pi_unknown")

        with pytest.raises(UnknownIntent):
            await reconciler.handle(payload.encode(), sign_payload(payload))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrelated_event_ignored(self, reconciler: WebhookReconciler) -> None:
        payload = stripe_event("charge.refunded", "ch_123")

        result = await reconciler.handle(payload.encode(), sign_payload(payload))

        assert result["status"] == "ignored"
        assert result["event_type"] == "charge.refunded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_event_without_intent_reference_ignored(
        self, reconciler: WebhookReconciler, processor: PaymentIntentProcessor
    ) -> None:
        payload = json.dumps(
            {
                "id": "evt_missing_reference",
                "object": "event",
                "type": "payment_intent.succeeded",
                "data": {"object": {"object": "payment_intent"}},
            }
        )

        result = await reconciler.handle(payload.encode(), sign_payload(payload))

        assert result["status"] == "ignored"
        assert result["event_id"] == "evt_missing_reference"
        assert await processor.list_issues() == []
