"""
Models package for the storefront application
"""
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Import all models here to ensure they're registered
from models.user import User
from models.phone_otp import PhoneOTP
from models.shipping import ShippingSettings, MountainZipcode
from models.order import Order, OrderItem
from models.coupon import Coupon, UserCoupon
from models.points import UserPoints, PointHistory

__all__ = [
    'db',
    'User',
    'PhoneOTP',
    'ShippingSettings',
    'MountainZipcode',
    'Order',
    'OrderItem',
    'Coupon',
    'UserCoupon',
    'UserPoints',
    'PointHistory',
]
