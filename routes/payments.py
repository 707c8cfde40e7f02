"""
Payment verification: the paid amount comes from the provider record and is
checked against an order amount recomputed server-side.
"""
import json

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user

from models import db
from models.order import Order
from models.coupon import UserCoupon
from models.points import UserPoints
from utils.clock import utcnow
from utils.order_amount import (
    calculate_product_amount, calculate_coupon_discount, expected_total, amounts_match,
)
from utils.order_lifecycle import (
    PAYABLE_STATUSES, STATUS_PENDING, STATUS_PAYMENT_PENDING, STATUS_COMPLETED,
    VIRTUAL_ACCOUNT_EXPIRED_REASON, PROVIDER_CANCELLED_REASON,
    transition, settle_points_and_coupon, expire_virtual_account, cancel_order,
)
from utils.payment_gateway import (
    fetch_payment, verify_webhook, PaymentGatewayError, WebhookVerificationError, METHOD_VIRTUAL_ACCOUNT,
)
from utils.shipping import recalculate_shipping_fee_for_validation, is_valid_zipcode, ShippingSettingsError

payments_bp = Blueprint('payments', __name__, url_prefix='/api/payments')

ALREADY_PROCESSED_MSG = "This order has already been processed."
NOT_PAYABLE_MSG = "This order can no longer be paid."
GATEWAY_FAIL_MSG = "Unable to confirm the payment with the payment provider."
WEBHOOK_PAID_EVENT = 'Transaction.Paid'
WEBHOOK_FAILED_EVENT = 'Transaction.PaymentFailed'
WEBHOOK_CANCELLED_EVENTS = ('Transaction.Cancelled', 'Transaction.PartialCancelled')


def _json_error(message, status, /, **extra):
    payload = {"success": False, "message": message}
    payload.update(extra)
    return jsonify(payload), status


def _already_processed():
    return jsonify({"success": True, "message": ALREADY_PROCESSED_MSG, "already_processed": True})


@payments_bp.route('/verify', methods=['POST'])
@login_required
def verify_payment():
    """
    Confirm a payment for an order.
    Input: payment_id (the provider payment id, equal to the order's order_id).
    Card and transfer payments complete the order; an issued virtual account
    moves it to payment_pending until the deposit webhook arrives.
    """
    data = request.get_json(silent=True) or {}
    payment_id = data.get("payment_id")
    if not payment_id or not isinstance(payment_id, str):
        return _json_error("Required payment information is missing.", 400)

    order = Order.query.filter_by(order_id=payment_id).first()
    if not order:
        return _json_error("Order not found.", 404)
    if order.user_id != current_user.id:
        current_app.logger.warning("User %s tried to verify order %s owned by %s", current_user.id, order.order_id, order.user_id)
        return _json_error("You do not have permission for this order.", 403)

    if order.status == STATUS_COMPLETED:
        return _already_processed()
    expire_virtual_account(order)
    if order.status not in PAYABLE_STATUSES:
        return _json_error(NOT_PAYABLE_MSG, 400, status=order.status)

    try:
        payment = fetch_payment(payment_id)
    except PaymentGatewayError as e:
        current_app.logger.error(f"Payment lookup failed for order {order.order_id}: {str(e)}")
        return _json_error(GATEWAY_FAIL_MSG, 502)

    if not payment.is_paid and not payment.is_virtual_account_issued:
        return _json_error(f"The payment is not complete (status: {payment.status or 'unknown'}).", 400)

    if not order.items:
        return _json_error("Order items not found.", 404)

    product_amount = calculate_product_amount(order.items)

    if not is_valid_zipcode(order.shipping_postal_code):
        return _json_error("Shipping address is invalid.", 400)

    try:
        shipping_fee = recalculate_shipping_fee_for_validation(product_amount, order.shipping_postal_code)
    except ShippingSettingsError as e:
        current_app.logger.error(f"Shipping settings missing during payment verification: {str(e)}")
        return _json_error("Unable to verify the shipping fee.", 500)

    coupon_discount = 0
    if order.user_coupon_id:
        user_coupon = db.session.get(UserCoupon, order.user_coupon_id)
        if user_coupon and not user_coupon.is_used and user_coupon.user_id == order.user_id:
            coupon_discount = calculate_coupon_discount(user_coupon.coupon, product_amount)
        if not amounts_match(coupon_discount, order.coupon_discount or 0):
            current_app.logger.error(
                "Coupon discount mismatch for order %s: computed=%s stored=%s",
                order.order_id, coupon_discount, order.coupon_discount,
            )
            return _json_error("The coupon discount is not valid.", 400)

    points_used = order.used_points or 0
    if points_used > 0:
        user_points = db.session.get(UserPoints, order.user_id)
        if not user_points or user_points.points < points_used:
            return _json_error("Not enough points available.", 400)

    paid_amount = payment.amount_total
    expected = expected_total(product_amount, shipping_fee, coupon_discount, points_used)
    if not amounts_match(expected, paid_amount):
        current_app.logger.error(
            "Payment amount mismatch for order %s: expected=%s paid=%s (products=%s shipping=%s coupon=%s points=%s)",
            order.order_id, expected, paid_amount, product_amount, shipping_fee, coupon_discount, points_used,
        )
        return _json_error(
            "The paid amount does not match the order. Please try again.",
            400,
            details={"expected": expected, "paid": paid_amount},
        )

    now = utcnow()
    values = {
        Order.payment_key: payment.transaction_id or payment.payment_id,
        Order.shipping_fee: shipping_fee,
        Order.total_amount: paid_amount,
        Order.payment_method: payment.payment_method,
    }
    try:
        if payment.is_virtual_account_issued:
            values.update({
                Order.status: STATUS_PAYMENT_PENDING,
                Order.virtual_account_bank: payment.virtual_account_bank,
                Order.virtual_account_number: payment.virtual_account_number,
                Order.virtual_account_holder: payment.virtual_account_holder,
                Order.virtual_account_due_date: payment.virtual_account_due_date,
            })
            updated = transition(order, (STATUS_PENDING,), values)
        else:
            values.update({Order.status: STATUS_COMPLETED, Order.paid_at: now})
            updated = transition(order, PAYABLE_STATUSES, values)

        if not updated:
            db.session.rollback()
            return _already_processed()

        # Points and coupon settle once the money has arrived
        if not payment.is_virtual_account_issued:
            settle_points_and_coupon(order, now)

        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to update order {order.order_id}: {str(e)}", exc_info=True)
        return _json_error("Failed to update the order. Please contact support.", 500)

    if payment.is_virtual_account_issued:
        current_app.logger.info("Virtual account issued for order %s: %s KRW", order.order_id, paid_amount)
        return jsonify({
            "success": True,
            "message": "Virtual account issued. The order completes once the deposit arrives.",
            "order_id": order.order_id,
            "status": STATUS_PAYMENT_PENDING,
            "payment_method": METHOD_VIRTUAL_ACCOUNT,
            "shipping_fee": shipping_fee,
            "total_amount": paid_amount,
            "virtual_account": {
                "bank": payment.virtual_account_bank,
                "account_number": payment.virtual_account_number,
                "holder": payment.virtual_account_holder,
                "due_date": payment.virtual_account_due_date.isoformat() if payment.virtual_account_due_date else None,
            },
        })

    current_app.logger.info("Order %s paid: %s KRW", order.order_id, paid_amount)
    return jsonify({
        "success": True,
        "message": "Payment verified.",
        "order_id": order.order_id,
        "status": STATUS_COMPLETED,
        "shipping_fee": shipping_fee,
        "total_amount": paid_amount,
    })


@payments_bp.route('/webhook', methods=['POST'])
def payment_webhook():
    """Provider webhook. Transaction.Paid completes a virtual-account order once the deposit lands."""
    body = request.get_data(as_text=True)
    secret = current_app.config.get("PORTONE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("PORTONE_WEBHOOK_SECRET is not configured")
        return _json_error("Server configuration error.", 500)

    try:
        verify_webhook(
            secret,
            body,
            request.headers.get("webhook-id", ""),
            request.headers.get("webhook-timestamp", ""),
            request.headers.get("webhook-signature", ""),
        )
    except WebhookVerificationError as e:
        current_app.logger.warning(f"Rejected payment webhook: {str(e)}")
        return _json_error("Webhook verification failed.", 401)

    try:
        event = json.loads(body or "{}")
    except ValueError:
        return _json_error("Invalid webhook payload.", 400)

    event_type = event.get("type")
    payment_id = (event.get("data") or {}).get("paymentId")

    if event_type == WEBHOOK_FAILED_EVENT:
        return _cancel_from_webhook(payment_id, VIRTUAL_ACCOUNT_EXPIRED_REASON, virtual_account_only=True)
    if event_type in WEBHOOK_CANCELLED_EVENTS:
        return _cancel_from_webhook(payment_id, PROVIDER_CANCELLED_REASON)
    if event_type != WEBHOOK_PAID_EVENT:
        current_app.logger.info("Ignoring payment webhook %s", event_type)
        return jsonify({"success": True, "message": "Event ignored."})

    if not payment_id:
        return _json_error("paymentId is required.", 400)

    try:
        payment = fetch_payment(payment_id)
    except PaymentGatewayError as e:
        current_app.logger.error(f"Webhook payment lookup failed for {payment_id}: {str(e)}")
        return _json_error(GATEWAY_FAIL_MSG, 502)

    if not payment.is_paid:
        return jsonify({"success": True, "message": f"Payment status is {payment.status}; nothing to do."})

    order = Order.query.filter_by(order_id=str(payment_id)).first()
    if not order:
        current_app.logger.error("Webhook for unknown order %s", payment_id)
        return _json_error("Order not found.", 404)
    if order.status == STATUS_COMPLETED:
        return _already_processed()
    if order.status not in PAYABLE_STATUSES:
        current_app.logger.error("Deposit for order %s arrived in status %s; refund required", order.order_id, order.status)
        return _json_error(NOT_PAYABLE_MSG, 409, status=order.status)

    if not amounts_match(order.total_amount or 0, payment.amount_total):
        current_app.logger.error(
            "Webhook amount mismatch for order %s: expected=%s paid=%s",
            order.order_id, order.total_amount, payment.amount_total,
        )
        return _json_error("The paid amount does not match the order.", 400)

    now = utcnow()
    try:
        updated = transition(order, PAYABLE_STATUSES, {
            Order.status: STATUS_COMPLETED,
            Order.virtual_account_deposited_at: now,
            Order.paid_at: now,
        })
        if not updated:
            db.session.rollback()
            return _already_processed()
        settle_points_and_coupon(order, now)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to complete order {order.order_id} from webhook: {str(e)}", exc_info=True)
        return _json_error("Failed to update the order.", 500)

    current_app.logger.info("Deposit received for order %s", order.order_id)
    return jsonify({"success": True, "message": "Deposit confirmed.", "order_id": order.order_id})


def _cancel_from_webhook(payment_id, reason, virtual_account_only=False):
    if not payment_id:
        return _json_error("paymentId is required.", 400)

    order = Order.query.filter_by(order_id=str(payment_id)).first()
    if not order or (virtual_account_only and order.payment_method != METHOD_VIRTUAL_ACCOUNT):
        return jsonify({"success": True, "message": "Event ignored."})

    try:
        cancelled = cancel_order(order, reason)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to cancel order {order.order_id} from webhook: {str(e)}", exc_info=True)
        return _json_error("Failed to update the order.", 500)

    if cancelled:
        current_app.logger.info("Order %s cancelled: %s", order.order_id, reason)
    return jsonify({"success": True, "message": "Order cancelled." if cancelled else "Event ignored."})
