import hashlib
import hmac
import json
from typing import Any, Dict, Optional

import httpx
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

EVENT_TYPES = {
    "charge.success": PAYMENT_SUCCEEDED,
    "charge.successful": PAYMENT_SUCCEEDED,
    "transaction.success": PAYMENT_SUCCEEDED,
    "charge.failed": PAYMENT_FAILED,
    "transaction.failed": PAYMENT_FAILED,
    "refund.processed": PAYMENT_REFUNDED,
    "refund.success": PAYMENT_REFUNDED,
}


def _metadata(value) -> Dict[str, Any]:
    # Paystack echoes metadata as an object, a JSON string or ""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


class PaystackClient:
    provider = Provider.PAYSTACK
    signature_header = "x-paystack-signature"

    def __init__(self, secret_key: str, webhook_secret: Optional[str] = None,
                 base_url: str = "https://api.paystack.co", callback_url: Optional[str] = None,
                 timeout: float = 10.0, http_client: Optional[httpx.Client] = None):
        if not secret_key:
            raise RuntimeError("PAYSTACK_SECRET_KEY not configured")
        self.webhook_secret = webhook_secret or secret_key
        self.callback_url = callback_url
        self.http = http_client or httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {secret_key}"},
            timeout=timeout,
        )

    def _call(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("paystack_request_failed", operation=operation, error=str(exc))
            raise ProviderError(f"Paystack {operation} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.is_error or not payload.get("status"):
            message = payload.get("message") or ""
            logger.warning(
                "paystack_request_rejected",
                operation=operation,
                status_code=response.status_code,
                message=message,
            )
            if response.status_code in (400, 404) and "not found" in message.lower():
                raise NotFoundError(f"Paystack {operation} failed: {message}")
            raise ProviderError(
                f"Paystack {operation} failed: {payload.get('message') or response.status_code}",
                retryable=response.status_code >= 500 or response.status_code == 429,
                payload=payload,
            )
        return payload.get("data") or {}

    def initialize(self, *, reference: str, email: str, amount_minor: int, currency: str,
                   metadata: Dict[str, Any]) -> InitializeResult:
        body = {
            "email": email,
            "amount": amount_minor,
            "currency": currency,
            "reference": reference,
            "metadata": metadata,
        }
        if self.callback_url:
            body["callback_url"] = self.callback_url

        data = self._call("POST", "/transaction/initialize", "initialize", json=body)
        return InitializeResult(
            reference=data.get("reference") or reference,
            redirect_url=data.get("authorization_url"),
            raw=data,
        )

    def verify(self, reference: str) -> VerifyResult:
        data = self._call("GET", f"/transaction/verify/{reference}", "verify")
        status = (data.get("status") or "").lower()
        if status == "reversed":
            status = "refunded"
        return VerifyResult(
            reference=data.get("reference") or reference,
            status=status,
            amount_minor=data.get("amount"),
            currency=data.get("currency"),
            metadata=_metadata(data.get("metadata")),
            failure_reason=data.get("gateway_response") if status == "failed" else None,
            raw=data,
        )

    def refund(self, reference: str, reason: Optional[str] = None) -> RefundResult:
        body = {"transaction": reference}
        if reason:
            body["merchant_note"] = reason
        data = self._call("POST", "/refund", "refund", json=body)
        return RefundResult(
            reference=reference,
            refund_id=str(data["id"]) if data.get("id") is not None else None,
            status=data.get("status") or "pending",
            raw=data,
        )

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise SignatureError("Missing Paystack webhook signature")
        expected = hmac.new(self.webhook_secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise SignatureError("Invalid Paystack webhook signature")

    def parse_event(self, payload: Dict[str, Any]) -> ProviderEvent:
        name = payload.get("event") or ""
        data = payload.get("data") or {}
        event_type = EVENT_TYPES.get(name)

        if name == "refund.updated" and (data.get("status") or "").lower() == "processed":
            event_type = PAYMENT_REFUNDED

        if event_type == PAYMENT_REFUNDED:
            transaction = data.get("transaction") or {}
            reference = (
                (transaction.get("reference") if isinstance(transaction, dict) else None)
                or data.get("transaction_reference")
                or data.get("reference")
            )
        else:
            reference = data.get("reference")

        return ProviderEvent(
            event_type=event_type,
            provider_event=name,
            reference=reference,
            amount_minor=data.get("amount") if event_type == PAYMENT_SUCCEEDED else None,
            currency=data.get("currency") if event_type == PAYMENT_SUCCEEDED else None,
            failure_reason=data.get("gateway_response") if event_type == PAYMENT_FAILED else None,
            data=data,
        )

    def close(self) -> None:
        self.http.close()
