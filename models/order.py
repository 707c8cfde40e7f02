"""
Order and order item models
"""
from models import db
from utils.clock import utcnow


class Order(db.Model):
    """Customer order. status: pending, payment_pending, completed, failed, cancelled"""
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    status = db.Column(db.String(20), default='pending')
    total_amount = db.Column(db.Integer, nullable=False, default=0)
    shipping_fee = db.Column(db.Integer, nullable=False, default=0)
    shipping_name = db.Column(db.String(100))
    shipping_phone = db.Column(db.String(20))
    shipping_postal_code = db.Column(db.String(5))
    shipping_address = db.Column(db.String(255))
    shipping_address_detail = db.Column(db.String(255))
    used_points = db.Column(db.Integer, nullable=False, default=0)
    user_coupon_id = db.Column(db.Integer, db.ForeignKey('user_coupons.id'), nullable=True)
    coupon_discount = db.Column(db.Integer, nullable=False, default=0)
    payment_key = db.Column(db.String(100), unique=True, nullable=True)
    payment_method = db.Column(db.String(20), nullable=True)  # CARD, TRANSFER, VIRTUAL_ACCOUNT
    virtual_account_bank = db.Column(db.String(50), nullable=True)
    virtual_account_number = db.Column(db.String(50), nullable=True)
    virtual_account_holder = db.Column(db.String(100), nullable=True)
    virtual_account_due_date = db.Column(db.DateTime, nullable=True)
    virtual_account_deposited_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    items = db.relationship('OrderItem', backref='order', lazy=True, cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Order {self.order_id}>'


class OrderItem(db.Model):
    """Line item, priced at order time."""
    __tablename__ = 'order_items'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    product_name = db.Column(db.String(200), nullable=False)
    product_price = db.Column(db.Integer, nullable=False)
    option_name = db.Column(db.String(200), nullable=True)
    option_price = db.Column(db.Integer, nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    def __repr__(self):
        return f'<OrderItem {self.product_name} x{self.quantity}>'
