"""
API tests for payment verification, the provider webhook and virtual-account expiry.
"""
import json
import time
from datetime import timedelta

import pytest

from models.coupon import Coupon, UserCoupon
from models.order import Order, OrderItem
from models.points import PointHistory, UserPoints
from models.user import User
from utils.clock import utcnow
from utils.payment_gateway import (
    ProviderPayment, PaymentGatewayError, STATUS_PAID, STATUS_VIRTUAL_ACCOUNT_ISSUED, sign_webhook,
)

WEBHOOK_SECRET = "whsec_dGVzdC13ZWJob29rLXNlY3JldA=="


@pytest.fixture
def customer(db):
    user = User(email="buyer@example.com", phone="+821055556666", phone_verified=True)
    db.session.add(user)
    db.session.commit()
    db.session.add(UserPoints(user_id=user.id, points=5000, total_earned=5000, total_used=0))
    db.session.commit()
    return user


@pytest.fixture
def make_order(db, customer):
    def _make(order_id="ORD-1", zipcode="06236", used_points=0, coupon=None, coupon_discount=0, user=None,
              items=None, **columns):
        owner = user or customer
        user_coupon = None
        if coupon is not None:
            user_coupon = UserCoupon(user_id=owner.id, coupon_id=coupon.id)
            db.session.add(user_coupon)
            db.session.flush()
        order = Order(
            order_id=order_id,
            user_id=owner.id,
            status="pending",
            shipping_postal_code=zipcode,
            used_points=used_points,
            user_coupon_id=user_coupon.id if user_coupon else None,
            coupon_discount=coupon_discount,
        )
        for name, value in columns.items():
            setattr(order, name, value)
        for price, option_price, quantity in items if items is not None else [(12000, 1000, 2)]:
            order.items.append(OrderItem(
                product_name="Tea set",
                product_price=price,
                option_price=option_price,
                quantity=quantity,
            ))
        db.session.add(order)
        db.session.commit()
        return order
    return _make


@pytest.fixture
def fixed_coupon(db):
    coupon = Coupon(code="WELCOME2000", name="Welcome", discount_type="fixed", discount_value=2000)
    db.session.add(coupon)
    db.session.commit()
    return coupon


@pytest.fixture
def provider(monkeypatch):
    """Stand-in for the payment provider; register(...) records what a lookup returns."""
    payments = {}
    lookups = []

    def fake_fetch(payment_id):
        lookups.append(payment_id)
        if payment_id not in payments:
            raise PaymentGatewayError("Payment lookup failed (HTTP 404).")
        return payments[payment_id]

    def register(payment_id, amount, status=STATUS_PAID, method_type="PaymentMethodCard", **fields):
        payments[payment_id] = ProviderPayment(
            payment_id=payment_id,
            status=status,
            amount_total=amount,
            transaction_id=f"tx-{payment_id}",
            method_type=method_type,
            **fields,
        )

    monkeypatch.setattr("routes.payments.fetch_payment", fake_fetch)
    register.lookups = lookups
    return register


def verify(client, payment_id, **extra):
    body = {"payment_id": payment_id}
    body.update(extra)
    return client.post("/api/payments/verify", json=body)


def issue_virtual_account(provider, payment_id, amount, due_date=None):
    provider(
        payment_id, amount,
        status=STATUS_VIRTUAL_ACCOUNT_ISSUED,
        method_type="PaymentMethodVirtualAccount",
        virtual_account_bank="SHINHAN",
        virtual_account_number="110-123-456789",
        virtual_account_holder="Storefront",
        virtual_account_due_date=due_date or utcnow() + timedelta(days=3),
    )


def send_webhook(client, event, secret=WEBHOOK_SECRET, timestamp=None, signature=None):
    body = json.dumps(event)
    webhook_id = "msg_test_1"
    timestamp = str(int(time.time())) if timestamp is None else timestamp
    headers = {
        "webhook-id": webhook_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": signature or sign_webhook(secret, body, webhook_id, timestamp),
    }
    return client.post("/api/payments/webhook", data=body, headers=headers, content_type="application/json")


class TestVerifyPayment:

    def test_requires_login(self, client, make_order, provider):
        make_order()
        provider("ORD-1", 29000)
        assert verify(client, "ORD-1").status_code == 401

    def test_completes_order(self, client, db, login, customer, make_order, fixed_coupon, provider):
        order = make_order(used_points=1000, coupon=fixed_coupon, coupon_discount=2000)
        # 2 x (12000 + 1000) + 3000 shipping - 2000 coupon - 1000 points
        provider("ORD-1", 26000)
        login(customer)

        resp = verify(client, "ORD-1")
        data = resp.get_json()
        assert resp.status_code == 200, data
        assert data["shipping_fee"] == 3000
        assert data["total_amount"] == 26000
        assert data["status"] == "completed"

        db.session.refresh(order)
        assert order.status == "completed"
        assert order.payment_key == "tx-ORD-1"
        assert order.payment_method == "CARD"
        assert order.paid_at is not None

        points = db.session.get(UserPoints, customer.id)
        assert points.points == 4000
        assert points.total_used == 1000
        history = PointHistory.query.filter_by(user_id=customer.id).one()
        assert history.points == -1000
        assert history.type == "use"

        user_coupon = db.session.get(UserCoupon, order.user_coupon_id)
        assert user_coupon.is_used is True
        assert user_coupon.used_order_id == order.id

    def test_client_supplied_amount_is_ignored(self, client, db, login, customer, make_order, provider):
        order = make_order()
        provider("ORD-1", 1000)
        login(customer)

        resp = verify(client, "ORD-1", paid_amount=29000, payment_key="pay_forged")
        data = resp.get_json()
        assert resp.status_code == 400
        assert data["details"] == {"expected": 29000, "paid": 1000}
        db.session.refresh(order)
        assert order.status == "pending"
        assert order.payment_key is None

    def test_cancelled_order_cannot_be_completed(self, client, db, login, customer, make_order, provider):
        order = make_order(used_points=1000, status="cancelled")
        provider("ORD-1", 28000)
        login(customer)

        resp = verify(client, "ORD-1")
        assert resp.status_code == 400
        assert resp.get_json()["status"] == "cancelled"
        db.session.refresh(order)
        assert order.status == "cancelled"
        assert db.session.get(UserPoints, customer.id).points == 5000
        assert provider.lookups == []

    def test_second_verification_is_idempotent(self, client, db, login, customer, make_order, provider):
        make_order(used_points=1000)
        provider("ORD-1", 28000)
        login(customer)
        assert verify(client, "ORD-1").status_code == 200
        again = verify(client, "ORD-1")
        assert again.status_code == 200
        assert again.get_json()["already_processed"] is True
        assert db.session.get(UserPoints, customer.id).points == 4000

    def test_payment_not_complete_at_provider(self, client, db, login, customer, make_order, provider):
        order = make_order()
        provider("ORD-1", 29000, status="READY")
        login(customer)
        resp = verify(client, "ORD-1")
        assert resp.status_code == 400
        assert "READY" in resp.get_json()["message"]
        db.session.refresh(order)
        assert order.status == "pending"

    def test_provider_unavailable(self, client, login, customer, make_order, provider):
        make_order()
        login(customer)
        assert verify(client, "ORD-1").status_code == 502

    def test_jeju_surcharge_included(self, client, login, customer, make_order, provider):
        make_order(zipcode="63100")
        provider("ORD-1", 32000)
        login(customer)
        resp = verify(client, "ORD-1")
        assert resp.status_code == 200
        assert resp.get_json()["shipping_fee"] == 6000

    def test_free_shipping_threshold(self, client, login, customer, make_order, provider):
        make_order(items=[(50000, 0, 1)])
        provider("ORD-1", 50000)
        login(customer)
        resp = verify(client, "ORD-1")
        assert resp.status_code == 200
        assert resp.get_json()["shipping_fee"] == 0

    def test_rounding_tolerance(self, client, login, customer, make_order, provider):
        make_order()
        provider("ORD-1", 29001)
        login(customer)
        assert verify(client, "ORD-1").status_code == 200

    def test_missing_payment_id(self, client, login, customer):
        login(customer)
        resp = client.post("/api/payments/verify", json={"order_id": "ORD-1", "paid_amount": 29000})
        assert resp.status_code == 400

    def test_unknown_order(self, client, login, customer, provider):
        login(customer)
        assert verify(client, "NOPE").status_code == 404

    def test_other_users_order(self, client, db, login, make_order, provider):
        stranger = User(email="other@example.com")
        db.session.add(stranger)
        db.session.commit()
        make_order()
        provider("ORD-1", 29000)
        login(stranger)
        assert verify(client, "ORD-1").status_code == 403

    def test_order_without_items(self, client, login, customer, make_order, provider):
        make_order(items=[])
        provider("ORD-1", 3000)
        login(customer)
        assert verify(client, "ORD-1").status_code == 404

    def test_invalid_zipcode(self, client, login, customer, make_order, provider):
        make_order(zipcode="123")
        provider("ORD-1", 29000)
        login(customer)
        assert verify(client, "ORD-1").status_code == 400

    def test_insufficient_points(self, client, login, customer, make_order, provider):
        make_order(used_points=9000)
        provider("ORD-1", 20000)
        login(customer)
        resp = verify(client, "ORD-1")
        assert resp.status_code == 400
        assert "points" in resp.get_json()["message"]

    def test_coupon_discount_mismatch(self, client, login, customer, make_order, fixed_coupon, provider):
        make_order(coupon=fixed_coupon, coupon_discount=5000)
        provider("ORD-1", 24000)
        login(customer)
        resp = verify(client, "ORD-1")
        assert resp.status_code == 400
        assert "coupon" in resp.get_json()["message"]

    def test_used_coupon_rejected(self, client, db, login, customer, make_order, fixed_coupon, provider):
        order = make_order(coupon=fixed_coupon, coupon_discount=2000)
        db.session.get(UserCoupon, order.user_coupon_id).is_used = True
        db.session.commit()
        provider("ORD-1", 27000)
        login(customer)
        assert verify(client, "ORD-1").status_code == 400


class TestVirtualAccount:

    def test_issued_account_waits_for_deposit(self, client, db, login, customer, make_order, fixed_coupon, provider):
        order = make_order(used_points=1000, coupon=fixed_coupon, coupon_discount=2000)
        issue_virtual_account(provider, "ORD-1", 26000)
        login(customer)

        resp = verify(client, "ORD-1")
        data = resp.get_json()
        assert resp.status_code == 200, data
        assert data["status"] == "payment_pending"
        assert data["virtual_account"]["account_number"] == "110-123-456789"

        db.session.refresh(order)
        assert order.status == "payment_pending"
        assert order.payment_method == "VIRTUAL_ACCOUNT"
        assert order.virtual_account_bank == "SHINHAN"
        assert order.total_amount == 26000
        assert order.paid_at is None
        # Nothing is settled before the deposit
        assert db.session.get(UserPoints, customer.id).points == 5000
        assert db.session.get(UserCoupon, order.user_coupon_id).is_used is False

    def test_deposit_webhook_completes_order(self, client, db, login, customer, make_order, fixed_coupon, provider):
        order = make_order(used_points=1000, coupon=fixed_coupon, coupon_discount=2000)
        issue_virtual_account(provider, "ORD-1", 26000)
        login(customer)
        assert verify(client, "ORD-1").status_code == 200

        provider("ORD-1", 26000, method_type="PaymentMethodVirtualAccount")
        resp = send_webhook(client, {"type": "Transaction.Paid", "data": {"paymentId": "ORD-1"}})
        assert resp.status_code == 200, resp.get_json()

        db.session.refresh(order)
        assert order.status == "completed"
        assert order.virtual_account_deposited_at is not None
        assert db.session.get(UserPoints, customer.id).points == 4000
        assert db.session.get(UserCoupon, order.user_coupon_id).is_used is True

        again = send_webhook(client, {"type": "Transaction.Paid", "data": {"paymentId": "ORD-1"}})
        assert again.get_json()["already_processed"] is True
        assert db.session.get(UserPoints, customer.id).points == 4000

    def test_deposit_amount_mismatch(self, client, db, make_order, provider):
        order = make_order(status="payment_pending", payment_method="VIRTUAL_ACCOUNT", total_amount=29000)
        provider("ORD-1", 1000, method_type="PaymentMethodVirtualAccount")
        resp = send_webhook(client, {"type": "Transaction.Paid", "data": {"paymentId": "ORD-1"}})
        assert resp.status_code == 400
        db.session.refresh(order)
        assert order.status == "payment_pending"

    def test_deposit_on_cancelled_order(self, client, db, make_order, provider):
        order = make_order(status="cancelled", payment_method="VIRTUAL_ACCOUNT", total_amount=29000)
        provider("ORD-1", 29000, method_type="PaymentMethodVirtualAccount")
        resp = send_webhook(client, {"type": "Transaction.Paid", "data": {"paymentId": "ORD-1"}})
        assert resp.status_code == 409
        db.session.refresh(order)
        assert order.status == "cancelled"

    def test_expired_account_is_cancelled_on_verify(self, client, db, login, customer, make_order, provider):
        order = make_order(
            payment_method="VIRTUAL_ACCOUNT",
            virtual_account_due_date=utcnow() - timedelta(hours=1),
        )
        provider("ORD-1", 29000)
        login(customer)

        resp = verify(client, "ORD-1")
        assert resp.status_code == 400
        db.session.refresh(order)
        assert order.status == "cancelled"
        assert order.cancel_reason == "Virtual account deposit deadline passed"


class TestPaymentWebhook:

    def test_rejects_bad_signature(self, client, db, make_order, provider):
        order = make_order(status="payment_pending", payment_method="VIRTUAL_ACCOUNT", total_amount=29000)
        provider("ORD-1", 29000)
        resp = send_webhook(
            client,
            {"type": "Transaction.Paid", "data": {"paymentId": "ORD-1"}},
            signature="v1,bm90LWEtc2lnbmF0dXJl",
        )
        assert resp.status_code == 401
        db.session.refresh(order)
        assert order.status == "payment_pending"

    def test_rejects_stale_timestamp(self, client, make_order, provider):
        make_order()
        resp = send_webhook(
            client,
            {"type": "Transaction.Paid", "data": {"paymentId": "ORD-1"}},
            timestamp=str(int(time.time()) - 3600),
        )
        assert resp.status_code == 401

    def test_rejects_missing_headers(self, client):
        resp = client.post("/api/payments/webhook", json={"type": "Transaction.Paid"})
        assert resp.status_code == 401

    def test_unconfigured_secret(self, app, client):
        app.config["PORTONE_WEBHOOK_SECRET"] = None
        resp = send_webhook(client, {"type": "Transaction.Paid", "data": {"paymentId": "ORD-1"}})
        assert resp.status_code == 500

    def test_other_events_are_acknowledged(self, client, provider):
        resp = send_webhook(client, {"type": "Transaction.VirtualAccountIssued", "data": {"paymentId": "ORD-1"}})
        assert resp.status_code == 200
        assert provider.lookups == []

    def test_unpaid_status_is_ignored(self, client, db, make_order, provider):
        order = make_order(status="payment_pending", payment_method="VIRTUAL_ACCOUNT", total_amount=29000)
        provider("ORD-1", 29000, status=STATUS_VIRTUAL_ACCOUNT_ISSUED)
        assert send_webhook(client, {"type": "Transaction.Paid", "data": {"paymentId": "ORD-1"}}).status_code == 200
        db.session.refresh(order)
        assert order.status == "payment_pending"

    def test_payment_failed_cancels_virtual_account_order(self, client, db, make_order):
        order = make_order(status="payment_pending", payment_method="VIRTUAL_ACCOUNT")
        resp = send_webhook(client, {"type": "Transaction.PaymentFailed", "data": {"paymentId": "ORD-1"}})
        assert resp.status_code == 200
        db.session.refresh(order)
        assert order.status == "cancelled"
        assert order.cancel_reason == "Virtual account deposit deadline passed"

    def test_payment_failed_leaves_card_order(self, client, db, make_order):
        order = make_order(payment_method="CARD")
        send_webhook(client, {"type": "Transaction.PaymentFailed", "data": {"paymentId": "ORD-1"}})
        db.session.refresh(order)
        assert order.status == "pending"

    def test_provider_cancellation(self, client, db, make_order):
        order = make_order(status="payment_pending", payment_method="VIRTUAL_ACCOUNT")
        resp = send_webhook(client, {"type": "Transaction.Cancelled", "data": {"paymentId": "ORD-1"}})
        assert resp.status_code == 200
        db.session.refresh(order)
        assert order.status == "cancelled"
        assert order.cancel_reason == "Payment cancelled at the payment provider"


class TestExpireVirtualAccounts:

    def expire(self, client, token="test-cron-secret"):
        return client.get("/api/cron/expire-virtual-accounts", headers={"Authorization": f"Bearer {token}"})

    def test_requires_cron_secret(self, client):
        assert client.get("/api/cron/expire-virtual-accounts").status_code == 401
        assert self.expire(client, token="wrong").status_code == 401

    def test_cancels_only_expired_virtual_accounts(self, client, db, make_order):
        past = utcnow() - timedelta(hours=2)
        future = utcnow() + timedelta(days=1)
        expired = make_order("ORD-OLD", status="payment_pending", payment_method="VIRTUAL_ACCOUNT",
                             virtual_account_due_date=past)
        live = make_order("ORD-LIVE", status="payment_pending", payment_method="VIRTUAL_ACCOUNT",
                          virtual_account_due_date=future)
        card = make_order("ORD-CARD", payment_method="CARD", virtual_account_due_date=past)
        paid = make_order("ORD-PAID", status="completed", payment_method="VIRTUAL_ACCOUNT",
                          virtual_account_due_date=past)

        resp = self.expire(client)
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["cancelled"] == 1
        assert data["cancelled_order_ids"] == ["ORD-OLD"]

        for order in (expired, live, card, paid):
            db.session.refresh(order)
        assert expired.status == "cancelled"
        assert expired.cancel_reason == "Virtual account deposit deadline passed"
        assert live.status == "payment_pending"
        assert card.status == "pending"
        assert paid.status == "completed"

    def test_nothing_to_expire(self, client):
        data = self.expire(client).get_json()
        assert data["cancelled"] == 0
        assert data["cancelled_order_ids"] == []
