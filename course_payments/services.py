"""Process-wide collaborators, built once at startup and injected into routes."""

from dataclasses import dataclass
from typing import Dict

from sqlalchemy.orm import sessionmaker

from course_payments.checkout import PaymentIntentInitiator
from course_payments.config import Settings
from course_payments.database import Base, make_engine, make_session_factory
from course_payments.directory import Directory, SqlDirectory
from course_payments.enrollment import EnrollmentHandler
from course_payments.models import Provider
from course_payments.paystack_service import PaystackClient
from course_payments.providers import ProviderClient
from course_payments.reconciliation import ReconciliationEngine
from course_payments.refunds import RefundCoordinator
from course_payments.stripe_service import StripeClient
from course_payments.verification import VerificationPoller
from course_payments.webhooks import WebhookReceiver


@dataclass
class Services:
    settings: Settings
    session_factory: sessionmaker
    providers: Dict[Provider, ProviderClient]
    default_provider: Provider
    checkout: PaymentIntentInitiator
    webhooks: WebhookReceiver
    reconciliation: ReconciliationEngine
    refunds: RefundCoordinator
    verification: VerificationPoller

    def provider(self, name: str) -> ProviderClient:
        try:
            return self.providers[Provider(name.upper())]
        except (KeyError, ValueError):
            raise LookupError(name)

    def close(self) -> None:
        for client in self.providers.values():
            client.close()


def build_providers(settings: Settings) -> Dict[Provider, ProviderClient]:
    providers: Dict[Provider, ProviderClient] = {}
    if settings.paystack_secret_key:
        providers[Provider.PAYSTACK] = PaystackClient(
            secret_key=settings.paystack_secret_key,
            webhook_secret=settings.paystack_webhook_secret,
            base_url=settings.paystack_base_url,
            callback_url=settings.paystack_callback_url,
            timeout=settings.provider_timeout,
        )
    if settings.stripe_secret_key:
        providers[Provider.STRIPE] = StripeClient(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance,
        )
    return providers


def build_services(settings: Settings, session_factory: sessionmaker = None,
                   providers: Dict[Provider, ProviderClient] = None,
                   directory: Directory = None) -> Services:
    if session_factory is None:
        db_engine = make_engine(settings.database_url)
        if settings.create_tables:
            Base.metadata.create_all(bind=db_engine)
        session_factory = make_session_factory(db_engine)
    if providers is None:
        providers = build_providers(settings)

    try:
        default_provider = Provider(settings.payment_provider.upper())
    except ValueError:
        raise RuntimeError(f"Unknown PAYMENT_PROVIDER: {settings.payment_provider}")
    if default_provider not in providers:
        raise RuntimeError(f"PAYMENT_PROVIDER {settings.payment_provider} is not configured")

    engine = ReconciliationEngine(session_factory, EnrollmentHandler())
    return Services(
        settings=settings,
        session_factory=session_factory,
        providers=providers,
        default_provider=default_provider,
        checkout=PaymentIntentInitiator(
            session_factory,
            providers,
            default_provider,
            directory or SqlDirectory(),
            settings.payment_currency,
            settings.currency_codes(),
        ),
        webhooks=WebhookReceiver(session_factory, engine, settings.webhook_claim_timeout),
        reconciliation=engine,
        refunds=RefundCoordinator(session_factory, providers),
        verification=VerificationPoller(session_factory, engine, providers, default_provider),
    )
