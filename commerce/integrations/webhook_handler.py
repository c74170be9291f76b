"""
Stripe webhook reconciler.

Verifies the signature of an inbound provider notification, extracts the
payment intent reference and outcome, and forwards them to
``PaymentIntentProcessor.reconcile``. Unverifiable payloads never reach the
processor. Duplicated or reordered deliveries are safe because reconcile is
idempotent, not because of any ordering here.
"""
import time
from typing import Any, Dict

import stripe
import structlog

from commerce.core.errors import InvalidWebhookSignature
from commerce.core.payment_intents import PaymentIntentProcessor
from commerce.core.states import PaymentOutcome
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EVENT_OUTCOMES: Dict[str, PaymentOutcome] = {
    "payment_intent.succeeded": PaymentOutcome.SUCCEEDED,
    "payment_intent.payment_failed": PaymentOutcome.FAILED,
}


class WebhookReconciler:
    """Stateless translation from Stripe events to reconcile calls."""

    def __init__(
        self,
        processor: PaymentIntentProcessor,
        webhook_secret: str,
        tolerance_seconds: int = 300,
    ):
        """
        Initialize webhook reconciler.

        Args:
            processor: Processor that applies payment outcomes
            webhook_secret: Stripe webhook signing secret
            tolerance_seconds: Maximum accepted age of a signed payload
        """
        self.processor = processor
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes, signature: str | None) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            InvalidWebhookSignature: If the signature is missing or does not verify
        """
        if not signature:
            logger.error("webhook_signature_missing")
            raise InvalidWebhookSignature("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.webhook_secret,
                tolerance=self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise InvalidWebhookSignature(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise InvalidWebhookSignature(f"Webhook payload is not valid JSON: {e}") from e

        logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
        return event

    async def handle(self, payload: bytes, signature: str | None) -> Dict[str, Any]:
        """
        Verify and process one notification.

        Returns:
            Dict[str, Any]: ``status`` is ``processed``, ``noop`` or ``ignored``

        Raises:
            InvalidWebhookSignature: If verification fails
            UnknownIntent: If no intent carries the event's reference
            ReconciliationConflict: If the outcome contradicts recorded state
        """
        start_time = time.time()
        event = self.verify(payload, signature)

        outcome = EVENT_OUTCOMES.get(event.type)
        if outcome is None:
            logger.info("webhook_event_ignored", event_id=event.id, event_type=event.type)
            metrics.record_webhook_event(event.type, "ignored", time.time() - start_time)
            return {"status": "ignored", "event_id": event.id, "event_type": event.type}

        provider_reference = getattr(event.data.object, "id", None)
        if not provider_reference:
            logger.warning(
                "webhook_event_missing_reference", event_id=event.id, event_type=event.type
            )
            metrics.record_webhook_event(event.type, "ignored", time.time() - start_time)
            return {"status": "ignored", "event_id": event.id, "event_type": event.type}

        try:
            result = await self.processor.reconcile(provider_reference, outcome)
        except Exception as e:
            status = getattr(e, "code", "error")
            metrics.record_webhook_event(event.type, status, time.time() - start_time)
            raise

        status = "processed" if result.applied else "noop"
        metrics.record_webhook_event(event.type, status, time.time() - start_time)
        logger.info(
            "webhook_event_reconciled",
            event_id=event.id,
            provider_reference=provider_reference,
            outcome=outcome.value,
            status=status,
        )
        return {
            "status": status,
            "event_id": event.id,
            "event_type": event.type,
            "intent_id": str(result.intent.id),
            "intent_state": result.intent.state,
        }
