from decimal import Decimal
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from course_payments.auth import get_services, require_admin, verify_token
from course_payments.errors import NotFoundError, PaymentsError, ValidationError
from course_payments.models import Payment, Provider
from course_payments.services import Services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payments")


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    course_id: str = Field(alias="courseId")
    amount: Decimal
    currency: Optional[str] = None
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")
    provider: Optional[str] = None


class RefundRequest(BaseModel):
    reason: Optional[str] = None


def _provider_name(value: Optional[str]) -> Optional[Provider]:
    if value is None:
        return None
    try:
        return Provider(value.upper())
    except ValueError:
        raise ValidationError(f"Unknown payment provider: {value}")


@router.post("/checkout", status_code=201)
def checkout(request: CheckoutRequest, claims: dict = Depends(verify_token),
             services: Services = Depends(get_services)):
    result = services.checkout.initiate(
        user_id=claims["sub"],
        course_id=request.course_id,
        amount=request.amount,
        currency=request.currency,
        coupon_code=request.coupon_code,
        provider=_provider_name(request.provider),
    )

    body = {
        "paymentId": result.payment_id,
        "reference": result.reference,
        "amount": str(result.amount),
        "currency": result.currency,
    }
    if result.redirect_url:
        body["redirectUrl"] = result.redirect_url
    if result.client_secret:
        body["clientSecret"] = result.client_secret
    return body


async def _receive(request: Request, services: Services, provider: str):
    try:
        client = services.provider(provider)
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Unknown payment provider: {provider}")

    # signature is computed over these exact bytes; nothing may parse them first
    payload = await request.body()
    signature = request.headers.get(client.signature_header)

    try:
        await run_in_threadpool(services.webhooks.receive, client, payload, signature)
    except PaymentsError:
        raise
    except Exception:
        # non-2xx makes the provider redeliver
        return PlainTextResponse("webhook processing failed", status_code=500)
    return PlainTextResponse("ok")


@router.post("/webhook")
async def webhook(request: Request, services: Services = Depends(get_services)):
    return await _receive(request, services, services.default_provider.value)


@router.post("/webhook/{provider}")
async def provider_webhook(provider: str, request: Request, services: Services = Depends(get_services)):
    return await _receive(request, services, provider)


@router.post("/reconcile")
def reconcile_pending(older_than_seconds: int = 900, limit: int = 100,
                      claims: dict = Depends(require_admin),
                      services: Services = Depends(get_services)):
    results = services.verification.sweep_pending(older_than_seconds, limit)
    return {
        "verified": len(results),
        "results": [
            {
                "reference": r.reference,
                "provider": r.provider.value,
                "providerStatus": r.provider_status,
                "outcome": r.outcome.value if r.outcome else None,
            }
            for r in results
        ],
    }


@router.get("/verify/{reference}")
def verify(reference: str, provider: Optional[str] = None,
           claims: dict = Depends(verify_token),
           services: Services = Depends(get_services)):
    result = services.verification.verify(reference, _provider_name(provider))
    return {
        "reference": result.reference,
        "provider": result.provider.value,
        "providerStatus": result.provider_status,
        "outcome": result.outcome.value if result.outcome else None,
        "adopted": result.adopted,
    }


@router.post("/{payment_id}/refund")
def refund(payment_id: str, request: Optional[RefundRequest] = None,
           claims: dict = Depends(require_admin),
           services: Services = Depends(get_services)):
    reason = request.reason if request else None
    result = services.refunds.refund(payment_id, reason)
    logger.info("refund_requested", payment_id=payment_id, admin=claims["sub"])
    return {
        "paymentId": payment_id,
        "status": "REFUNDED",
        "refundId": result.refund_id,
        "refundStatus": result.status,
    }


@router.get("/{payment_id}")
def get_payment(payment_id: str, claims: dict = Depends(verify_token),
                services: Services = Depends(get_services)):
    with services.session_factory() as db:
        payment = db.get(Payment, payment_id)
    if payment is None or (payment.user_id != claims["sub"] and claims.get("role") != "admin"):
        raise NotFoundError(f"Payment {payment_id} not found")

    return {
        "paymentId": payment.id,
        "courseId": payment.course_id,
        "amount": str(payment.amount),
        "originalAmount": str(payment.original_amount),
        "currency": payment.currency,
        "provider": payment.provider.value,
        "reference": payment.provider_reference,
        "status": payment.status.value,
        "couponCode": payment.coupon_code,
        "failureReason": payment.failure_reason,
        "createdAt": payment.created_at.isoformat(),
        "updatedAt": payment.updated_at.isoformat(),
    }
