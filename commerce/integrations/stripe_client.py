"""
Stripe API client with retry logic and error classification.

Implements:
- Exponential backoff for transient and rate-limit errors
- Idempotent payment intent creation
"""
import asyncio
import time
from enum import Enum
from functools import partial
from typing import Any, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.error_type != StripeErrorType.PERMANENT


class StripeClient:
    """
    Wrapper for the Stripe API used as the payment provider.

    Calls into the blocking Stripe SDK run in the default executor so the
    event loop is never blocked.
    """

    def __init__(self, secret_key: str, api_version: str, max_attempts: int = 5) -> None:
        """
        Initialize Stripe client.

        Args:
            secret_key: Stripe secret key
            api_version: Pinned Stripe API version
            max_attempts: Attempts per call for retryable errors
        """
        self.client = stripe.StripeClient(secret_key, stripe_version=api_version)
        self.max_attempts = max_attempts

        logger.info(
            "stripe_client_initialized",
            api_version=api_version,
            test_mode=secret_key.startswith("sk_test_"),
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _wrap_error(self, error: stripe.StripeError) -> StripeError:
        error_type = self._classify_error(error)

        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return StripeError(
            message=str(error),
            error_type=error_type,
            original_error=error,
        )

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        Args:
            amount_cents: Amount in cents
            currency: Currency code (e.g., 'usd')
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Optional metadata

        Returns:
            stripe.PaymentIntent: Created payment intent

        Raises:
            StripeError: If payment intent creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        @retry(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=16),
            reraise=True,
        )
        async def _create() -> stripe.PaymentIntent:
            start_time = time.time()
            call = partial(
                self.client.payment_intents.create,
                params={
                    "amount": amount_cents,
                    "currency": currency.lower(),
                    "metadata": metadata or {},
                    "automatic_payment_methods": {"enabled": True},
                },
                options={"idempotency_key": idempotency_key},
            )
            try:
                payment_intent = await asyncio.get_running_loop().run_in_executor(None, call)
            except stripe.StripeError as e:
                metrics.record_stripe_api_call(
                    "create_payment_intent", "error", time.time() - start_time
                )
                raise self._wrap_error(e) from e

            metrics.record_stripe_api_call(
                "create_payment_intent", "success", time.time() - start_time
            )
            return payment_intent

        payment_intent = await _create()

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent
