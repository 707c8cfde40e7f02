"""
Coupon models
"""
from models import db
from utils.clock import utcnow


class Coupon(db.Model):
    """Coupon definition. discount_type: percentage, fixed"""
    __tablename__ = 'coupons'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    discount_type = db.Column(db.String(20), nullable=False, default='fixed')
    discount_value = db.Column(db.Integer, nullable=False)
    min_purchase = db.Column(db.Integer, nullable=False, default=0)
    max_discount = db.Column(db.Integer, nullable=True)
    valid_from = db.Column(db.DateTime, nullable=True)
    valid_until = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<Coupon {self.code}>'


class UserCoupon(db.Model):
    """Coupon issued to a user; single use."""
    __tablename__ = 'user_coupons'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    coupon_id = db.Column(db.Integer, db.ForeignKey('coupons.id'), nullable=False)
    is_used = db.Column(db.Boolean, default=False)
    used_at = db.Column(db.DateTime, nullable=True)
    used_order_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    coupon = db.relationship('Coupon', lazy='joined')

    def __repr__(self):
        return f'<UserCoupon {self.id} used={self.is_used}>'
