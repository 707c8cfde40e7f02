"""
Order status transitions shared by payment verification, the payment webhook
and the virtual-account expiry job.

pending -> payment_pending (virtual account issued) -> completed (deposit)
pending -> completed (card / transfer)
pending, payment_pending -> cancelled (virtual account deadline passed, provider cancellation)
"""
import logging

from models import db
from models.order import Order
from models.coupon import UserCoupon
from models.points import UserPoints, PointHistory
from utils.clock import utcnow
from utils.payment_gateway import METHOD_VIRTUAL_ACCOUNT

logger = logging.getLogger(__name__)

STATUS_PENDING = 'pending'
STATUS_PAYMENT_PENDING = 'payment_pending'
STATUS_COMPLETED = 'completed'
STATUS_CANCELLED = 'cancelled'

# Orders in these states may still be settled by a payment
PAYABLE_STATUSES = (STATUS_PENDING, STATUS_PAYMENT_PENDING)

VIRTUAL_ACCOUNT_EXPIRED_REASON = "Virtual account deposit deadline passed"
PROVIDER_CANCELLED_REASON = "Payment cancelled at the payment provider"


def transition(order, from_statuses, values):
    """
    Conditional UPDATE of one order: applies values only while its status is
    one of from_statuses. Returns True when the row was changed. Caller commits.
    """
    values = dict(values)
    values.setdefault(Order.updated_at, utcnow())
    updated = (
        Order.query
        .filter(Order.id == order.id, Order.status.in_(from_statuses))
        .update(values, synchronize_session=False)
    )
    return bool(updated)


def settle_points_and_coupon(order, now=None):
    """
    Deduct the order's points and mark its coupon used. Run once, right after
    the transition to completed. Caller commits.
    """
    now = now or utcnow()
    points_used = order.used_points or 0
    if points_used > 0 and order.user_id:
        balance = db.session.get(UserPoints, order.user_id)
        if balance is None:
            logger.error("Order %s used %s points but user %s has no balance row", order.order_id, points_used, order.user_id)
        else:
            UserPoints.query.filter_by(user_id=order.user_id).update({
                UserPoints.points: UserPoints.points - points_used,
                UserPoints.total_used: UserPoints.total_used + points_used,
                UserPoints.updated_at: now,
            }, synchronize_session=False)
            db.session.add(PointHistory(
                user_id=order.user_id,
                points=-points_used,
                type='use',
                reason=f"Used for order {order.order_id}",
                order_id=order.id,
            ))

    if order.user_coupon_id:
        UserCoupon.query.filter_by(id=order.user_coupon_id, is_used=False).update({
            UserCoupon.is_used: True,
            UserCoupon.used_at: now,
            UserCoupon.used_order_id: order.id,
        }, synchronize_session=False)


def _expired_virtual_account_filter(query, now):
    return query.filter(
        Order.status.in_(PAYABLE_STATUSES),
        Order.payment_method == METHOD_VIRTUAL_ACCOUNT,
        Order.virtual_account_due_date.isnot(None),
        Order.virtual_account_due_date < now,
    )


def expire_virtual_account(order, now=None):
    """
    Cancel order if it is an unpaid virtual-account order past its deadline.
    Commits and returns True when the order was cancelled.
    """
    now = now or utcnow()
    if (
        order.status not in PAYABLE_STATUSES
        or order.payment_method != METHOD_VIRTUAL_ACCOUNT
        or not order.virtual_account_due_date
        or order.virtual_account_due_date >= now
    ):
        return False

    updated = _expired_virtual_account_filter(Order.query.filter(Order.id == order.id), now).update({
        Order.status: STATUS_CANCELLED,
        Order.cancel_reason: VIRTUAL_ACCOUNT_EXPIRED_REASON,
        Order.updated_at: now,
    }, synchronize_session=False)
    db.session.commit()
    if updated:
        logger.info("Virtual account order %s expired", order.order_id)
    return bool(updated)


def expire_virtual_accounts(now=None):
    """Cancel every expired virtual-account order. Commits; returns their order_ids."""
    now = now or utcnow()
    expired = _expired_virtual_account_filter(Order.query, now).with_entities(Order.id, Order.order_id).all()
    if not expired:
        return []

    ids = [row.id for row in expired]
    _expired_virtual_account_filter(Order.query.filter(Order.id.in_(ids)), now).update({
        Order.status: STATUS_CANCELLED,
        Order.cancel_reason: VIRTUAL_ACCOUNT_EXPIRED_REASON,
        Order.updated_at: now,
    }, synchronize_session=False)
    db.session.commit()
    logger.info("Cancelled %d expired virtual account orders", len(ids))
    return [row.order_id for row in expired]


def cancel_order(order, reason, from_statuses=PAYABLE_STATUSES):
    """Cancel order while it is in one of from_statuses. Caller commits."""
    return transition(order, from_statuses, {
        Order.status: STATUS_CANCELLED,
        Order.cancel_reason: reason,
    })
