"""
Provider capability surface.

Every payment provider adapter implements ProviderClient. Adapters translate
their own event names and statuses into the normalized event types below so
the reconciliation engine never sees provider-specific vocabulary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Protocol

from course_payments.models import Provider

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def quantize_amount(amount: Decimal, currency: str) -> Decimal:
    """Round a major-unit amount to the currency's smallest unit."""
    quantum = Decimal(1).scaleb(-currency_exponent(currency))
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str) -> int:
    scale = Decimal(10) ** currency_exponent(currency)
    return int((amount * scale).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    exponent = currency_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return (Decimal(amount_minor) / (Decimal(10) ** exponent)).quantize(quantum)


@dataclass
class InitializeResult:
    reference: str                      # provider's transaction id
    redirect_url: Optional[str] = None  # hosted checkout page, if any
    client_secret: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifyResult:
    reference: str
    status: str                         # success | failed | refunded | pending | provider-specific
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    reference: str
    refund_id: Optional[str]
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderEvent:
    event_type: Optional[str]           # normalized, None when we do not act on it
    provider_event: str                 # the provider's own event name
    reference: Optional[str]
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class ProviderClient(Protocol):
    provider: Provider
    signature_header: str

    def initialize(self, *, reference: str, email: str, amount_minor: int, currency: str,
                   metadata: Dict[str, Any]) -> InitializeResult:
        """
        Open a remote transaction. `reference` is our idempotency key.
        Raise ProviderError on any remote failure.
        """

    def verify(self, reference: str) -> VerifyResult:
        """Query the provider for the authoritative status of a transaction."""

    def refund(self, reference: str, reason: Optional[str] = None) -> RefundResult:
        """Refund a settled transaction in full."""

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """
        Check the webhook signature over the untouched request bytes.
        Raise SignatureError when it is missing or does not match.
        """

    def parse_event(self, payload: Dict[str, Any]) -> ProviderEvent:
        """Translate a verified, decoded webhook payload into a ProviderEvent."""


VERIFY_STATUS_EVENTS = {
    "success": PAYMENT_SUCCEEDED,
    "failed": PAYMENT_FAILED,
    "refunded": PAYMENT_REFUNDED,
}
