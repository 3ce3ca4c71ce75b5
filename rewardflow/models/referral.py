"""
Referral model.
Tracks who referred whom and the pending -> completed/expired lifecycle.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class ReferralStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    EXPIRED = 'expired'


class MemberReferral(db.Model):
    """
    Individual referral record.

    active_referee_key is the normalized referee email/phone while the
    referral is pending or completed, and NULL once expired. It is unique
    per tenant so a referee holds at most one live referral.
    """
    __tablename__ = 'member_referrals'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    loyalty_program_id = db.Column(db.Integer, db.ForeignKey('loyalty_programs.id'))

    # Referrer (existing member who shared the code)
    referral_code = db.Column(db.String(20), nullable=False)
    referrer_member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)

    # Referee (matched to a member on apply or on first resolve)
    referred_member_id = db.Column(db.Integer, db.ForeignKey('members.id'))
    referred_email = db.Column(db.String(255))
    referred_phone = db.Column(db.String(50))
    referred_name = db.Column(db.String(255))
    active_referee_key = db.Column(db.String(255))

    status = db.Column(db.String(20), default=ReferralStatus.PENDING.value, nullable=False)

    # Reward tracking
    points_awarded = db.Column(db.Integer, default=0)          # referrer side
    referee_points_awarded = db.Column(db.Integer, default=0)  # referee side

    # Completion anchor
    order_id = db.Column(db.String(64))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    completed_at = db.Column(db.DateTime)

    # Relationships
    referrer = db.relationship('Member', foreign_keys=[referrer_member_id], backref='referrals_made')
    referee = db.relationship('Member', foreign_keys=[referred_member_id], backref='referrals_received')

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'active_referee_key', name='uq_referral_active_referee'),
        db.UniqueConstraint('tenant_id', 'order_id', name='uq_referral_order'),
        db.Index('ix_member_referrals_status_expires', 'status', 'expires_at'),
    )

    def __repr__(self):
        return f'<MemberReferral {self.referral_code} by member={self.referrer_member_id} {self.status}>'

    def is_expired(self, now: datetime = None) -> bool:
        return (now or datetime.utcnow()) > self.expires_at

    def to_dict(self):
        return {
            'id': self.id,
            'referral_code': self.referral_code,
            'referrer_member_id': self.referrer_member_id,
            'referred_member_id': self.referred_member_id,
            'referred_email': self.referred_email,
            'referred_phone': self.referred_phone,
            'referred_name': self.referred_name,
            'status': self.status,
            'points_awarded': self.points_awarded,
            'referee_points_awarded': self.referee_points_awarded,
            'order_id': self.order_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None
        }
