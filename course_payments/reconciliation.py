"""
Payment state machine.

    PENDING --payment.succeeded--> SUCCEEDED --payment.refunded--> REFUNDED
    PENDING --payment.failed-----> FAILED

Webhooks and the verification poller both land here. Every transition is a
conditional UPDATE on the status it expects, so a replayed, stale or
out-of-order event changes nothing and is discarded with a warning.
"""

import enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from course_payments import coupons
from course_payments.enrollment import EnrollmentHandler
from course_payments.errors import ReconciliationConflict
from course_payments.models import Payment, PaymentStatus, Provider, utcnow
from course_payments.providers import (
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    to_minor_units,
)

logger = structlog.get_logger(__name__)

TRANSITIONS = {
    PAYMENT_SUCCEEDED: (PaymentStatus.PENDING, PaymentStatus.SUCCEEDED),
    PAYMENT_FAILED: (PaymentStatus.PENDING, PaymentStatus.FAILED),
    PAYMENT_REFUNDED: (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED),
}


class ReconciliationOutcome(str, enum.Enum):
    APPLIED = "applied"
    DISCARDED = "discarded"
    IGNORED = "ignored"


def append_audit(meta: Optional[Dict[str, Any]], key: str, entry: Dict[str, Any]) -> Dict[str, Any]:
    """Copy-on-write append so the JSON column sees a new value."""
    merged = dict(meta or {})
    merged[key] = list(merged.get(key) or []) + [entry]
    return merged


class ReconciliationEngine:
    def __init__(self, session_factory: sessionmaker, enrollments: EnrollmentHandler):
        self.session_factory = session_factory
        self.enrollments = enrollments

    def apply(self, provider: Provider, provider_reference: Optional[str], event_type: Optional[str],
              raw_payload: Dict[str, Any], *, amount_minor: Optional[int] = None,
              currency: Optional[str] = None, failure_reason: Optional[str] = None) -> ReconciliationOutcome:
        log = logger.bind(provider=provider.value, reference=provider_reference, event_type=event_type)

        if event_type not in TRANSITIONS:
            log.info("reconciliation_event_ignored")
            return ReconciliationOutcome.IGNORED

        with self.session_factory() as db:
            payment = None
            if provider_reference:
                payment = db.scalar(
                    select(Payment).where(
                        Payment.provider == provider,
                        Payment.provider_reference == provider_reference,
                    )
                )
            if payment is None:
                # foreign or unknown transaction; raising would only trigger endless redelivery
                log.info("reconciliation_payment_not_found")
                return ReconciliationOutcome.IGNORED

            log = log.bind(payment_id=payment.id)
            try:
                self._transition(db, payment, event_type, raw_payload, amount_minor, currency, failure_reason)
            except ReconciliationConflict as exc:
                db.rollback()
                log.warning("reconciliation_event_discarded", current_status=exc.current, reason=exc.message)
                return ReconciliationOutcome.DISCARDED

            db.commit()

        log.info("payment_status_changed", status=TRANSITIONS[event_type][1].value)
        return ReconciliationOutcome.APPLIED

    def _transition(self, db: Session, payment: Payment, event_type: str, raw_payload: Dict[str, Any],
                    amount_minor: Optional[int], currency: Optional[str], failure_reason: Optional[str]) -> None:
        expected, target = TRANSITIONS[event_type]

        if payment.status != expected:
            raise ReconciliationConflict(payment.id, payment.status.value, event_type)

        if event_type == PAYMENT_SUCCEEDED:
            self._check_amount(payment, event_type, amount_minor, currency)

        now = utcnow()
        values = {
            "status": target,
            "updated_at": now,
            "meta": append_audit(payment.meta, "events", {
                "type": event_type,
                "received_at": now.isoformat(),
                "payload": raw_payload,
            }),
        }
        if target == PaymentStatus.SUCCEEDED:
            values["succeeded_at"] = now
        elif target == PaymentStatus.REFUNDED:
            values["refunded_at"] = now
        elif target == PaymentStatus.FAILED:
            values["failure_reason"] = failure_reason

        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # another delivery moved the row between our read and our write
            raise ReconciliationConflict(
                payment.id, "unknown", event_type, reason="payment status changed concurrently"
            )

        if target == PaymentStatus.SUCCEEDED:
            self.enrollments.ensure_enrollment(db, payment.user_id, payment.course_id, payment.id)
            coupons.record_usage(db, payment.coupon_code)

    def _check_amount(self, payment: Payment, event_type: str,
                      amount_minor: Optional[int], currency: Optional[str]) -> None:
        if currency is not None and currency.upper() != payment.currency.upper():
            raise ReconciliationConflict(
                payment.id, payment.status.value, event_type,
                reason=f"currency mismatch ({currency} != {payment.currency})",
            )
        if amount_minor is not None:
            expected = to_minor_units(payment.amount, payment.currency)
            if int(amount_minor) != expected:
                raise ReconciliationConflict(
                    payment.id, payment.status.value, event_type,
                    reason=f"amount mismatch ({amount_minor} != {expected})",
                )
