import json
from typing import Any, Dict, Optional

import stripe
import structlog

from course_payments.errors import NotFoundError, ProviderError, SignatureError
from course_payments.models import Provider
from course_payments.providers import (
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    InitializeResult,
    ProviderEvent,
    RefundResult,
    VerifyResult,
)

logger = structlog.get_logger(__name__)

# payment_intent.payment_failed is not terminal: the intent returns to
# requires_payment_method and the customer may retry. Only canceled is final.
EVENT_TYPES = {
    "payment_intent.succeeded": PAYMENT_SUCCEEDED,
    "payment_intent.canceled": PAYMENT_FAILED,
    "charge.refunded": PAYMENT_REFUNDED,
}
ATTEMPT_FAILED = "payment_intent.payment_failed"


def _as_dict(obj) -> Dict[str, Any]:
    # StripeObject is a dict subclass; round-trip to get plain JSON types
    return json.loads(json.dumps(obj, default=str))


def _retryable(exc: Exception) -> bool:
    return isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError))


class StripeClient:
    provider = Provider.STRIPE
    signature_header = "stripe-signature"

    def __init__(self, secret_key: str, webhook_secret: Optional[str] = None,
                 tolerance: int = 300):
        if not secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY not configured")
        self.api_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def _fail(self, operation: str, exc: Exception):
        logger.warning("stripe_request_failed", operation=operation, error=str(exc))
        if isinstance(exc, stripe.InvalidRequestError) and exc.code == "resource_missing":
            raise NotFoundError(f"Stripe {operation} failed: {exc.user_message or exc}") from exc
        raise ProviderError(f"Stripe {operation} failed: {exc}", retryable=_retryable(exc)) from exc

    def initialize(self, *, reference: str, email: str, amount_minor: int, currency: str,
                   metadata: Dict[str, Any]) -> InitializeResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency.lower(),
                automatic_payment_methods={"enabled": True},
                receipt_email=email,
                metadata=metadata,
                idempotency_key=reference,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            self._fail("initialize", exc)

        return InitializeResult(
            reference=intent["id"],
            client_secret=intent["client_secret"],
            raw=_as_dict(intent),
        )

    def verify(self, reference: str) -> VerifyResult:
        try:
            intent = stripe.PaymentIntent.retrieve(
                reference, expand=["latest_charge"], api_key=self.api_key
            )
        except stripe.StripeError as exc:
            self._fail("verify", exc)

        data = _as_dict(intent)
        charge = data.get("latest_charge")
        if data.get("status") == "succeeded":
            refunded = isinstance(charge, dict) and charge.get("refunded")
            status = "refunded" if refunded else "success"
        elif data.get("status") == "canceled":
            status = "failed"
        else:
            status = "pending"

        error = data.get("last_payment_error") or {}
        return VerifyResult(
            reference=data["id"],
            status=status,
            amount_minor=data.get("amount_received") or data.get("amount"),
            currency=(data.get("currency") or "").upper() or None,
            metadata=data.get("metadata") or {},
            failure_reason=error.get("message") or data.get("cancellation_reason"),
            raw=data,
        )

    def refund(self, reference: str, reason: Optional[str] = None) -> RefundResult:
        try:
            refund = stripe.Refund.create(
                payment_intent=reference,
                metadata={"reason": reason} if reason else {},
                idempotency_key=f"refund-{reference}",
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            self._fail("refund", exc)

        data = _as_dict(refund)
        return RefundResult(
            reference=reference,
            refund_id=data.get("id"),
            status=data.get("status") or "pending",
            raw=data,
        )

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise SignatureError("Missing Stripe webhook signature")
        if not self.webhook_secret:
            raise SignatureError("Stripe webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"), signature, self.webhook_secret, self.tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise SignatureError(f"Invalid Stripe webhook signature: {exc}") from exc

    def parse_event(self, payload: Dict[str, Any]) -> ProviderEvent:
        name = payload.get("type") or ""
        obj = (payload.get("data") or {}).get("object") or {}
        event_type = EVENT_TYPES.get(name)

        if event_type == PAYMENT_REFUNDED:
            # partial refunds leave the payment settled
            reference = obj.get("payment_intent")
            if not obj.get("refunded"):
                event_type = None
        else:
            reference = obj.get("id")

        amount = None
        currency = None
        failure_reason = None
        if event_type == PAYMENT_SUCCEEDED:
            amount = obj.get("amount_received") or obj.get("amount")
            currency = (obj.get("currency") or "").upper() or None
        elif event_type == PAYMENT_FAILED or name == ATTEMPT_FAILED:
            failure_reason = (obj.get("last_payment_error") or {}).get("message") \
                or obj.get("cancellation_reason")

        if name == ATTEMPT_FAILED:
            logger.info("stripe_payment_attempt_failed", reference=reference, reason=failure_reason)

        return ProviderEvent(
            event_type=event_type,
            provider_event=name,
            reference=reference,
            amount_minor=amount,
            currency=currency,
            failure_reason=failure_reason,
            data=obj,
        )

    def close(self) -> None:
        """Nothing to release; the stripe SDK owns its HTTP client."""
