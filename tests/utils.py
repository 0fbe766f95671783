import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
from jose import jwt

from course_payments.models import Payment, PaymentStatus, Provider, new_id, utcnow

JWT_SECRET = "test-jwt-secret"
PAYSTACK_SECRET = "sk_test_paystack_secret"
STRIPE_SECRET = "sk_test_stripe_secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


def auth_headers(sub="user-1", role="student"):
    token = jwt.encode({"sub": sub, "role": role}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def paystack_body(event, reference, amount=4999, currency="NGN", **data):
    payload = {"event": event, "data": {"reference": reference, "amount": amount, "currency": currency, **data}}
    return json.dumps(payload).encode("utf-8")


def paystack_headers(body: bytes, secret=PAYSTACK_SECRET):
    signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return {"x-paystack-signature": signature, "Content-Type": "application/json"}


def stripe_headers(body: bytes, secret=STRIPE_WEBHOOK_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{body.decode('utf-8')}".encode("utf-8")
    mac = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={mac}", "Content-Type": "application/json"}


def make_payment(session_factory, reference, status=PaymentStatus.PENDING, amount="49.99",
                 currency="NGN", user_id="user-1", course_id="course-1",
                 provider=Provider.PAYSTACK, coupon_code=None):
    payment_id = new_id()
    with session_factory() as db:
        now = utcnow()
        db.add(Payment(
            id=payment_id,
            user_id=user_id,
            course_id=course_id,
            amount=Decimal(amount),
            original_amount=Decimal(amount),
            currency=currency,
            provider=provider,
            provider_reference=reference,
            status=status,
            coupon_code=coupon_code,
            meta={},
            created_at=now,
            updated_at=now,
        ))
        db.commit()
    return payment_id


class FakePaystack:
    """httpx.MockTransport handler that behaves like the Paystack REST API."""

    def __init__(self):
        self.requests = []
        self.transactions = {}
        self.fail_status = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"status": False, "message": "Gateway unavailable"})

        path = request.url.path
        if path == "/transaction/initialize":
            body = json.loads(request.content)
            reference = body["reference"]
            self.transactions[reference] = {
                "reference": reference,
                "status": "abandoned",
                "amount": body["amount"],
                "currency": body["currency"],
                "metadata": body["metadata"],
            }
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.paystack.com/{reference}",
                    "access_code": "access_" + reference[:8],
                    "reference": reference,
                },
            })

        if path.startswith("/transaction/verify/"):
            reference = path.rsplit("/", 1)[1]
            transaction = self.transactions.get(reference)
            if transaction is None:
                return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})
            return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": transaction})

        if path == "/refund":
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "status": True,
                "message": "Refund has been queued for processing",
                "data": {
                    "id": 3018284,
                    "status": "pending",
                    "transaction": {"reference": body["transaction"]},
                    "merchant_note": body.get("merchant_note"),
                },
            })

        return httpx.Response(404, json={"status": False, "message": "Not found"})

    def calls(self, path_prefix):
        return [r for r in self.requests if r.url.path.startswith(path_prefix)]
