from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from course_payments.errors import NotFoundError, ProviderError, ValidationError
from course_payments.models import Payment, PaymentStatus, Provider, new_id, utcnow
from course_payments.providers import (
    VERIFY_STATUS_EVENTS,
    ProviderClient,
    VerifyResult,
    from_minor_units,
)
from course_payments.reconciliation import ReconciliationEngine, ReconciliationOutcome

logger = structlog.get_logger(__name__)


@dataclass
class VerificationResult:
    reference: str
    provider: Provider
    provider_status: str
    outcome: Optional[ReconciliationOutcome]
    adopted: bool = False


class VerificationPoller:
    """Pull-side reconciliation. Feeds ReconciliationEngine.apply, same as webhooks."""

    def __init__(self, session_factory: sessionmaker, engine: ReconciliationEngine,
                 providers: Dict[Provider, ProviderClient], default_provider: Provider):
        self.session_factory = session_factory
        self.engine = engine
        self.providers = providers
        self.default_provider = default_provider

    def verify(self, reference: str, provider: Optional[Provider] = None) -> VerificationResult:
        name = provider or self.default_provider
        client = self.providers.get(name)
        if client is None:
            raise ValidationError(f"Payment provider {name.value} is not configured")

        remote = client.verify(reference)
        adopted = self._adopt_orphan(client.provider, remote)

        event_type = VERIFY_STATUS_EVENTS.get(remote.status)
        outcome = None
        if event_type is not None:
            outcome = self.engine.apply(
                client.provider,
                remote.reference,
                event_type,
                remote.raw,
                amount_minor=remote.amount_minor,
                currency=remote.currency,
                failure_reason=remote.failure_reason,
            )

        logger.info(
            "payment_verified",
            provider=client.provider.value,
            reference=remote.reference,
            provider_status=remote.status,
            outcome=outcome.value if outcome else None,
            adopted=adopted,
        )
        return VerificationResult(
            reference=remote.reference,
            provider=client.provider,
            provider_status=remote.status,
            outcome=outcome,
            adopted=adopted,
        )

    def _adopt_orphan(self, provider: Provider, remote: VerifyResult) -> bool:
        """Create the local PENDING row for a remote transaction checkout never recorded."""
        user_id = remote.metadata.get("user_id")
        course_id = remote.metadata.get("course_id")
        if not (user_id and course_id and remote.amount_minor is not None and remote.currency):
            return False

        with self.session_factory() as db:
            found = db.scalar(
                select(Payment.id).where(
                    Payment.provider == provider,
                    Payment.provider_reference == remote.reference,
                )
            )
            if found is not None:
                return False

            amount = from_minor_units(int(remote.amount_minor), remote.currency)
            now = utcnow()
            db.add(Payment(
                id=remote.metadata.get("payment_id") or new_id(),
                user_id=str(user_id),
                course_id=str(course_id),
                amount=amount,
                original_amount=amount,
                currency=remote.currency.upper(),
                provider=provider,
                provider_reference=remote.reference,
                status=PaymentStatus.PENDING,
                coupon_code=remote.metadata.get("coupon") or None,
                meta={"adopted": remote.raw},
                created_at=now,
                updated_at=now,
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False

        logger.warning("orphan_transaction_adopted", provider=provider.value, reference=remote.reference)
        return True

    def sweep_pending(self, older_than_seconds: int = 900, limit: int = 100) -> List[VerificationResult]:
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        with self.session_factory() as db:
            rows = db.execute(
                select(Payment.provider, Payment.provider_reference)
                .where(Payment.status == PaymentStatus.PENDING, Payment.created_at < cutoff)
                .order_by(Payment.created_at)
                .limit(limit)
            ).all()

        results = []
        for provider, reference in rows:
            try:
                results.append(self.verify(reference, provider))
            except (ProviderError, NotFoundError) as exc:
                logger.warning(
                    "pending_sweep_verify_failed",
                    provider=provider.value,
                    reference=reference,
                    error=exc.message,
                )
        logger.info("pending_sweep_finished", checked=len(rows), verified=len(results))
        return results
