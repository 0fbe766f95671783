"""
Inbound webhook handling.

Deliveries are at-least-once and may repeat byte for byte. The SHA-256 of
the raw body is claimed in webhook_events before any work happens; whoever
inserts the row processes the payload, every other delivery of the same
bytes short-circuits. FAILED rows, and PROCESSING rows whose worker died,
are claimed again through a compare-and-set on `attempts`.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from course_payments.errors import ValidationError
from course_payments.models import WebhookEvent, WebhookEventStatus, as_utc, utcnow
from course_payments.providers import ProviderClient
from course_payments.reconciliation import ReconciliationEngine, ReconciliationOutcome

logger = structlog.get_logger(__name__)


@dataclass
class WebhookResult:
    event_hash: str
    duplicate: bool
    outcome: Optional[ReconciliationOutcome] = None


def event_hash(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


class WebhookReceiver:
    def __init__(self, session_factory: sessionmaker, engine: ReconciliationEngine,
                 claim_timeout: int = 300):
        self.session_factory = session_factory
        self.engine = engine
        self.claim_timeout = timedelta(seconds=claim_timeout)

    def receive(self, client: ProviderClient, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        log = logger.bind(provider=client.provider.value)

        try:
            client.verify_signature(raw_body, signature)
        except Exception:
            log.warning("webhook_signature_rejected")
            raise

        digest = event_hash(raw_body)
        log = log.bind(event_hash=digest)

        event_id = self._claim(client, digest, raw_body)
        if event_id is None:
            log.info("webhook_duplicate_ignored")
            return WebhookResult(event_hash=digest, duplicate=True)

        event = None
        try:
            try:
                payload = json.loads(raw_body)
            except ValueError as exc:
                raise ValidationError(f"Malformed webhook payload: {exc}") from exc
            if not isinstance(payload, dict):
                raise ValidationError("Malformed webhook payload: expected a JSON object")

            event = client.parse_event(payload)
            log = log.bind(provider_event=event.provider_event, reference=event.reference)
            log.info("webhook_received")

            outcome = self.engine.apply(
                client.provider,
                event.reference,
                event.event_type,
                payload,
                amount_minor=event.amount_minor,
                currency=event.currency,
                failure_reason=event.failure_reason,
            )
        except Exception as exc:
            log.error("webhook_processing_failed", error=str(exc), exc_info=True)
            self._finish(event_id, WebhookEventStatus.FAILED, event, error=str(exc))
            raise

        self._finish(event_id, WebhookEventStatus.PROCESSED, event)
        log.info("webhook_processed", outcome=outcome.value)
        return WebhookResult(event_hash=digest, duplicate=False, outcome=outcome)

    def _claim(self, client: ProviderClient, digest: str, raw_body: bytes) -> Optional[int]:
        with self.session_factory() as db:
            event = WebhookEvent(
                event_hash=digest,
                provider=client.provider,
                raw_payload=raw_body.decode("utf-8", errors="replace"),
                status=WebhookEventStatus.PROCESSING,
                attempts=1,
            )
            db.add(event)
            try:
                db.commit()
                return event.id
            except IntegrityError:
                db.rollback()

            existing = db.scalar(select(WebhookEvent).where(WebhookEvent.event_hash == digest))
            if existing is None or not self._reclaimable(existing):
                return None

            result = db.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == existing.id,
                    WebhookEvent.status == existing.status,
                    WebhookEvent.attempts == existing.attempts,
                )
                .values(
                    status=WebhookEventStatus.PROCESSING,
                    attempts=existing.attempts + 1,
                    error=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount != 1:
                return None

            logger.info(
                "webhook_reclaimed",
                event_hash=digest,
                previous_status=existing.status.value,
                attempt=existing.attempts + 1,
            )
            return existing.id

    def _reclaimable(self, event: WebhookEvent) -> bool:
        if event.status == WebhookEventStatus.FAILED:
            return True
        if event.status == WebhookEventStatus.PROCESSING:
            return utcnow() - as_utc(event.updated_at) > self.claim_timeout
        return False

    def _finish(self, event_id: int, status: WebhookEventStatus, event=None, error: Optional[str] = None) -> None:
        now = utcnow()
        values = {"status": status, "error": error, "updated_at": now}
        if status == WebhookEventStatus.PROCESSED:
            values["processed_at"] = now
        if event is not None:
            values["event_type"] = event.provider_event
            values["provider_reference"] = event.reference

        with self.session_factory() as db:
            db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
