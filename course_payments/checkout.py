from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from course_payments import coupons
from course_payments.directory import Directory
from course_payments.errors import NotFoundError, ValidationError
from course_payments.models import Payment, PaymentStatus, Provider, new_id, utcnow
from course_payments.providers import ProviderClient, quantize_amount, to_minor_units

logger = structlog.get_logger(__name__)

# largest value Payment.amount (Numeric(12, 2)) can hold
MAX_AMOUNT = Decimal("9999999999.99")


@dataclass
class CheckoutResult:
    payment_id: str
    reference: str
    amount: Decimal
    currency: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None


class PaymentIntentInitiator:
    def __init__(self, session_factory: sessionmaker, providers: Dict[Provider, ProviderClient],
                 default_provider: Provider, directory: Directory,
                 default_currency: str, supported_currencies):
        self.session_factory = session_factory
        self.providers = providers
        self.default_provider = default_provider
        self.directory = directory
        self.default_currency = default_currency.upper()
        self.supported_currencies = {c.upper() for c in supported_currencies}

    def _amount(self, amount, currency: str) -> Decimal:
        try:
            value = Decimal(str(amount))
            if not value.is_finite():
                raise ValidationError(f"Invalid amount: {amount!r}")
            value = quantize_amount(value, currency)
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid amount: {amount!r}")
        if value <= 0:
            raise ValidationError("Amount must be positive")
        if value > MAX_AMOUNT:
            raise ValidationError(f"Amount must not exceed {MAX_AMOUNT}")
        return value

    def _provider(self, provider: Optional[Provider]) -> ProviderClient:
        name = provider or self.default_provider
        client = self.providers.get(name)
        if client is None:
            raise ValidationError(f"Payment provider {name.value} is not configured")
        return client

    def initiate(self, user_id: str, course_id: str, amount, currency: Optional[str] = None,
                 coupon_code: Optional[str] = None, provider: Optional[Provider] = None) -> CheckoutResult:
        currency = (currency or self.default_currency).upper()
        if currency not in self.supported_currencies:
            raise ValidationError(f"Unsupported currency: {currency}")
        price = self._amount(amount, currency)
        client = self._provider(provider)

        with self.session_factory() as db:
            email = self.directory.get_user_email(db, user_id)
            if not email:
                raise ValidationError("User email required to start a payment")
            if not self.directory.course_exists(db, course_id):
                raise NotFoundError(f"Course {course_id} not found")

            final = price
            if coupon_code:
                final = quantize_amount(
                    coupons.apply_coupon(db, coupon_code, course_id, price).amount, currency
                )
                coupon_code = coupon_code.strip().upper()
                if final <= 0:
                    raise ValidationError("Amount after discount must be positive")

        payment_id = new_id()
        amount_minor = to_minor_units(final, currency)
        # remote first; a ProviderError here leaves no local row behind
        intent = client.initialize(
            reference=payment_id,
            email=email,
            amount_minor=amount_minor,
            currency=currency,
            metadata={
                "user_id": user_id,
                "course_id": course_id,
                "payment_id": payment_id,
                "coupon": coupon_code or "",
            },
        )

        try:
            with self.session_factory() as db:
                now = utcnow()
                db.add(Payment(
                    id=payment_id,
                    user_id=user_id,
                    course_id=course_id,
                    amount=final,
                    original_amount=price,
                    currency=currency,
                    provider=client.provider,
                    provider_reference=intent.reference,
                    status=PaymentStatus.PENDING,
                    coupon_code=coupon_code,
                    meta={"initialize": intent.raw},
                    created_at=now,
                    updated_at=now,
                ))
                db.commit()
        except Exception:
            # the verification poller can adopt this transaction from its metadata
            logger.exception(
                "payment_persist_failed_orphan_transaction",
                provider=client.provider.value,
                reference=intent.reference,
                payment_id=payment_id,
            )
            raise

        logger.info(
            "payment_intent_created",
            payment_id=payment_id,
            provider=client.provider.value,
            reference=intent.reference,
            amount=str(final),
            currency=currency,
            coupon=coupon_code,
        )
        return CheckoutResult(
            payment_id=payment_id,
            reference=intent.reference,
            amount=final,
            currency=currency,
            redirect_url=intent.redirect_url,
            client_secret=intent.client_secret,
        )
