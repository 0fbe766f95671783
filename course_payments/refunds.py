from typing import Dict, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from course_payments.errors import NotFoundError, ValidationError
from course_payments.models import Payment, PaymentStatus, Provider, utcnow
from course_payments.providers import ProviderClient, RefundResult
from course_payments.reconciliation import append_audit

logger = structlog.get_logger(__name__)


class RefundCoordinator:
    def __init__(self, session_factory: sessionmaker, providers: Dict[Provider, ProviderClient]):
        self.session_factory = session_factory
        self.providers = providers

    def refund(self, payment_id: str, reason: Optional[str] = None) -> RefundResult:
        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.status != PaymentStatus.SUCCEEDED:
            raise ValidationError(
                f"Only succeeded payments can be refunded; payment is {payment.status.value}"
            )
        if not payment.provider_reference:
            raise ValidationError("Payment has no provider reference to refund")

        client = self.providers.get(payment.provider)
        if client is None:
            raise ValidationError(f"Payment provider {payment.provider.value} is not configured")

        # ProviderError propagates untouched; nothing local has changed yet
        result = client.refund(payment.provider_reference, reason)

        now = utcnow()
        with self.session_factory() as db:
            current = db.get(Payment, payment_id)
            changed = db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == PaymentStatus.SUCCEEDED)
                .values(
                    status=PaymentStatus.REFUNDED,
                    refunded_at=now,
                    updated_at=now,
                    meta=append_audit(current.meta, "refunds", {
                        "refund_id": result.refund_id,
                        "reason": reason,
                        "requested_at": now.isoformat(),
                        "payload": result.raw,
                    }),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()

        if changed != 1:
            # a refund webhook got there first; the provider refund still stands
            logger.warning("refund_status_already_changed", payment_id=payment_id)

        logger.info(
            "payment_refunded",
            payment_id=payment_id,
            provider=payment.provider.value,
            reference=payment.provider_reference,
            refund_id=result.refund_id,
            refund_status=result.status,
        )
        return result
