from course_payments.models import Enrollment, Payment, PaymentStatus, WebhookEvent
from tests.utils import auth_headers, make_payment, paystack_body, paystack_headers


def test_checkout_success(client, services, fake_paystack):
    response = client.post(
        "/payments/checkout",
        json={"courseId": "course-1", "amount": 49.99, "currency": "usd"},
        headers=auth_headers(),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["redirectUrl"].startswith("https://checkout.paystack.com/")
    assert body["currency"] == "USD"
    assert body["amount"] == "49.99"

    with services.session_factory() as db:
        payment = db.get(Payment, body["paymentId"])
        assert payment.status == PaymentStatus.PENDING
        assert payment.provider_reference == body["reference"]


def test_checkout_requires_token(client):
    response = client.post("/payments/checkout", json={"courseId": "course-1", "amount": 10})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing token"


def test_checkout_rejects_bad_token(client):
    response = client.post(
        "/payments/checkout",
        json={"courseId": "course-1", "amount": 10},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == 401


def test_checkout_non_positive_amount_is_400(client):
    response = client.post(
        "/payments/checkout",
        json={"courseId": "course-1", "amount": 0},
        headers=auth_headers(),
    )
    assert response.status_code == 400
    assert response.json()["retryable"] is False
    assert response.json()["detail"] == "Amount must be positive"


def test_checkout_unknown_course_is_404(client):
    response = client.post(
        "/payments/checkout",
        json={"courseId": "no-such-course", "amount": 10},
        headers=auth_headers(),
    )
    assert response.status_code == 404
    assert response.json() == {"detail": "Course no-such-course not found", "retryable": False}


def test_checkout_unrepresentable_amount_is_400(client, services):
    response = client.post(
        "/payments/checkout",
        json={"courseId": "course-1", "amount": "1e30"},
        headers=auth_headers(),
    )

    assert response.status_code == 400
    assert response.json()["retryable"] is False
    with services.session_factory() as db:
        assert db.query(Payment).count() == 0


def test_checkout_provider_failure_is_retryable(client, services, fake_paystack):
    fake_paystack.fail_status = 503

    response = client.post(
        "/payments/checkout",
        json={"courseId": "course-1", "amount": 25},
        headers=auth_headers(),
    )

    assert response.status_code == 502
    assert response.json()["retryable"] is True
    with services.session_factory() as db:
        assert db.query(Payment).count() == 0


def test_refund_payment_success(client, services):
    payment_id = make_payment(services.session_factory, "ref-paid", status=PaymentStatus.SUCCEEDED)

    response = client.post(
        f"/payments/{payment_id}/refund",
        json={"reason": "requested by customer"},
        headers=auth_headers(sub="admin-1", role="admin"),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "REFUNDED"
    assert response.json()["refundId"] == "3018284"


def test_refund_requires_admin(client, services):
    payment_id = make_payment(services.session_factory, "ref-paid", status=PaymentStatus.SUCCEEDED)

    response = client.post(f"/payments/{payment_id}/refund", headers=auth_headers())

    assert response.status_code == 403


def test_refund_unknown_payment_is_404(client):
    response = client.post(
        "/payments/does-not-exist/refund",
        headers=auth_headers(sub="admin-1", role="admin"),
    )
    assert response.status_code == 404


def test_paystack_webhook_success(client, services):
    payment_id = make_payment(services.session_factory, "ref-200")
    body = paystack_body("charge.success", "ref-200", amount=4999)

    response = client.post("/payments/webhook", content=body, headers=paystack_headers(body))

    assert response.status_code == 200
    assert response.text == "ok"
    with services.session_factory() as db:
        assert db.get(Payment, payment_id).status == PaymentStatus.SUCCEEDED
        assert db.query(Enrollment).filter_by(user_id="user-1", course_id="course-1").count() == 1


def test_webhook_invalid_signature(client, services):
    payment_id = make_payment(services.session_factory, "ref-200")
    body = paystack_body("charge.success", "ref-200")

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"x-paystack-signature": "invalid_sig"},
    )

    assert response.status_code == 400
    with services.session_factory() as db:
        assert db.get(Payment, payment_id).status == PaymentStatus.PENDING
        assert db.query(WebhookEvent).count() == 0


def test_webhook_missing_signature(client):
    body = paystack_body("charge.success", "ref-200")
    response = client.post("/payments/webhook", content=body)
    assert response.status_code == 400


def test_webhook_unknown_provider_is_404(client):
    response = client.post("/payments/webhook/paypal", content=b"{}")
    assert response.status_code == 404


def test_webhook_processing_failure_returns_500(client, services, mocker):
    make_payment(services.session_factory, "ref-boom")
    mocker.patch.object(
        services.reconciliation.enrollments, "ensure_enrollment", side_effect=RuntimeError("db down")
    )
    body = paystack_body("charge.success", "ref-boom")

    response = client.post("/payments/webhook", content=body, headers=paystack_headers(body))

    assert response.status_code == 500


def test_verify_endpoint(client, services, fake_paystack):
    payment_id = make_payment(services.session_factory, "ref-verify")
    fake_paystack.transactions["ref-verify"] = {
        "reference": "ref-verify",
        "status": "success",
        "amount": 4999,
        "currency": "NGN",
        "metadata": {},
    }

    response = client.get("/payments/verify/ref-verify", headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["providerStatus"] == "success"
    assert response.json()["outcome"] == "applied"
    with services.session_factory() as db:
        assert db.get(Payment, payment_id).status == PaymentStatus.SUCCEEDED


def test_verify_unknown_reference_is_404(client):
    response = client.get("/payments/verify/ref-nowhere", headers=auth_headers())

    assert response.status_code == 404
    assert response.json()["retryable"] is False


def test_get_payment_owner_only(client, services):
    payment_id = make_payment(services.session_factory, "ref-own", user_id="user-1")

    own = client.get(f"/payments/{payment_id}", headers=auth_headers(sub="user-1"))
    other = client.get(f"/payments/{payment_id}", headers=auth_headers(sub="user-2"))
    admin = client.get(f"/payments/{payment_id}", headers=auth_headers(sub="admin-1", role="admin"))

    assert own.status_code == 200
    assert own.json()["status"] == "PENDING"
    assert other.status_code == 404
    assert admin.status_code == 200


def test_reconcile_requires_admin(client):
    assert client.post("/payments/reconcile", headers=auth_headers()).status_code == 403
    response = client.post("/payments/reconcile", headers=auth_headers(sub="admin-1", role="admin"))
    assert response.status_code == 200
    assert response.json()["verified"] == 0
