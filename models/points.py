"""
Reward points models
"""
from models import db
from utils.clock import utcnow


class UserPoints(db.Model):
    """Current points balance per user"""
    __tablename__ = 'user_points'

    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), primary_key=True)
    points = db.Column(db.Integer, nullable=False, default=0)
    total_earned = db.Column(db.Integer, nullable=False, default=0)
    total_used = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<UserPoints {self.user_id}: {self.points}>'


class PointHistory(db.Model):
    """Ledger of point changes. type: earn, use, expire"""
    __tablename__ = 'point_history'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    points = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(20), nullable=False)
    reason = db.Column(db.String(255))
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<PointHistory {self.user_id} {self.points}>'
