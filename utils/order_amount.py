"""
Server-side order amount checks used before accepting a payment.
"""
from utils.clock import utcnow, to_naive_utc

# Rounding tolerance between computed and paid amounts (KRW)
AMOUNT_TOLERANCE = 1


def calculate_product_amount(items):
    """Sum of (product price + option price) * quantity over order items."""
    total = 0
    for item in items:
        unit_price = (item.product_price or 0) + (item.option_price or 0)
        total += unit_price * (item.quantity or 0)
    return total


def is_coupon_applicable(coupon, product_amount, now=None):
    if coupon is None or not coupon.is_active:
        return False
    now = now or utcnow()
    if coupon.valid_from and now < to_naive_utc(coupon.valid_from):
        return False
    if coupon.valid_until and now > to_naive_utc(coupon.valid_until):
        return False
    return product_amount >= (coupon.min_purchase or 0)


def calculate_coupon_discount(coupon, product_amount, now=None):
    """
    Discount granted by coupon on product_amount.
    Percentage coupons are floored and capped by max_discount; fixed coupons
    never discount more than the product amount.
    """
    if not is_coupon_applicable(coupon, product_amount, now):
        return 0
    if coupon.discount_type == 'percentage':
        discount = product_amount * coupon.discount_value // 100
        if coupon.max_discount:
            discount = min(discount, coupon.max_discount)
        return discount
    return min(coupon.discount_value, product_amount)


def expected_total(product_amount, shipping_fee, coupon_discount=0, points_used=0):
    return product_amount + shipping_fee - coupon_discount - points_used


def amounts_match(expected, actual, tolerance=AMOUNT_TOLERANCE):
    return abs(expected - actual) <= tolerance
