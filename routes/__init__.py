"""
Routes package for the storefront application
"""
# Export blueprints for registration in app.py
from routes.auth import auth_bp
from routes.shipping import shipping_bp
from routes.payments import payments_bp
from routes.cron import cron_bp

__all__ = [
    'auth_bp',
    'shipping_bp',
    'payments_bp',
    'cron_bp',
]
