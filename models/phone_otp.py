"""
Phone verification OTP model.
Only the bcrypt hash of a code is stored; the plaintext never reaches the DB.
"""
import uuid
from datetime import timedelta

from models import db
from utils.clock import utcnow
from utils.otp_helper import MAX_OTP_ATTEMPTS

# A verified record proves phone ownership until this long after its expiry
VERIFIED_PROOF_GRACE_MINUTES = 10


class PhoneOTP(db.Model):
    """
    One record per issued code. At most one unverified record per phone is live;
    issuing a new code deletes the older unverified ones.
    """
    __tablename__ = 'phone_otps'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    phone = db.Column(db.String(20), nullable=False, index=True)
    otp_hash = db.Column(db.String(255), nullable=False)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    verified = db.Column(db.Boolean, nullable=False, default=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def is_expired(self, now=None):
        return (now or utcnow()) >= self.expires_at

    def attempts_exceeded(self):
        return (self.attempts or 0) >= MAX_OTP_ATTEMPTS

    def is_usable_proof(self, now=None):
        """True while a verified record may back find-id / reset-password."""
        if not self.verified:
            return False
        deadline = self.expires_at + timedelta(minutes=VERIFIED_PROOF_GRACE_MINUTES)
        return (now or utcnow()) <= deadline

    @classmethod
    def supersede_unverified(cls, phone):
        """Delete unverified records for phone. Caller commits."""
        return cls.query.filter_by(phone=phone, verified=False).delete()

    @classmethod
    def latest_unverified(cls, phone):
        return (
            cls.query.filter_by(phone=phone, verified=False)
            .order_by(cls.created_at.desc())
            .first()
        )

    @classmethod
    def find_proof(cls, verification_id, phone):
        """Verified record matching both id and phone, or None."""
        if not verification_id:
            return None
        return cls.query.filter_by(id=str(verification_id), phone=phone, verified=True).first()

    def __repr__(self):
        return f'<PhoneOTP {self.phone} verified={self.verified}>'
