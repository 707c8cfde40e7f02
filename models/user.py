"""
User model definition
"""
from models import db
from flask_login import UserMixin
from utils.clock import utcnow


class User(UserMixin, db.Model):
    """Customer account. Phone-only accounts carry a placeholder email."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(20), nullable=True, index=True)  # E.164
    phone_verified = db.Column(db.Boolean, default=False)
    phone_verified_at = db.Column(db.DateTime, nullable=True)
    password_hash = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Relationships
    orders = db.relationship('Order', backref='user', lazy=True)

    @staticmethod
    def placeholder_email(e164_phone):
        """Email used for accounts created from a verified phone number."""
        return f"{e164_phone.lstrip('+')}@phone.local"

    def to_dict(self):
        return {
            'id': self.id,
            'full_name': self.full_name,
            'email': self.email,
            'phone': self.phone,
            'phone_verified': bool(self.phone_verified),
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<User {self.email}>'
