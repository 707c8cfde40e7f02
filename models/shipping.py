"""
Shipping fee configuration models
"""
from models import db
from utils.clock import utcnow


class ShippingSettings(db.Model):
    """Shipping fee settings. Exactly one row is expected to be active."""
    __tablename__ = 'shipping_settings'

    id = db.Column(db.Integer, primary_key=True)
    base_shipping_fee = db.Column(db.Integer, nullable=False, default=3000)
    free_shipping_threshold = db.Column(db.Integer, nullable=False, default=50000)
    jeju_additional_fee = db.Column(db.Integer, nullable=False, default=3000)
    mountain_additional_fee = db.Column(db.Integer, nullable=False, default=5000)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'base_shipping_fee': self.base_shipping_fee,
            'free_shipping_threshold': self.free_shipping_threshold,
            'jeju_additional_fee': self.jeju_additional_fee,
            'mountain_additional_fee': self.mountain_additional_fee,
            'is_active': bool(self.is_active),
        }

    def __repr__(self):
        return f'<ShippingSettings {self.id}>'


class MountainZipcode(db.Model):
    """Zipcodes that carry a regional surcharge (Jeju or remote mountain/island)."""
    __tablename__ = 'mountain_zipcodes'

    id = db.Column(db.Integer, primary_key=True)
    zipcode = db.Column(db.String(5), unique=True, nullable=False, index=True)
    region_name = db.Column(db.String(100), nullable=False)
    region_type = db.Column(db.String(20), nullable=False)  # jeju, mountain
    additional_fee = db.Column(db.Integer, nullable=True)  # NULL: use the settings fee for region_type
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<MountainZipcode {self.zipcode} {self.region_type}>'
