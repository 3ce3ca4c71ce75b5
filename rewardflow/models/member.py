"""
Member and MemberOrder models.

Per-member order counters live on Member and are only changed by conditional
UPDATE statements issued in the transaction that records the order
(see services/order_ledger.py).
"""
from datetime import datetime
from decimal import Decimal
from ..extensions import db


class Member(db.Model):
    """
    Customer of a tenant, resolved from order events by phone or email.
    """
    __tablename__ = 'members'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    tier_id = db.Column(db.Integer, db.ForeignKey('loyalty_tiers.id'))

    # Shopify identity
    shopify_customer_id = db.Column(db.String(50))

    # Contact info (synced from order payloads)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(50))
    name = db.Column(db.String(255))
    tags = db.Column(db.Text)  # Shopify comma-separated tag string

    # Referral
    referral_code = db.Column(db.String(20), nullable=False)
    referred_by_id = db.Column(db.Integer, db.ForeignKey('members.id'))

    # Persisted order history counters
    order_count = db.Column(db.Integer, default=0, nullable=False)
    paid_order_count = db.Column(db.Integer, default=0, nullable=False)
    total_spend = db.Column(db.Numeric(12, 2), default=Decimal('0'), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tier = db.relationship('LoyaltyTier', backref=db.backref('members', lazy='dynamic'))
    referred_by = db.relationship('Member', remote_side=[id], backref='referred_members')
    orders = db.relationship('MemberOrder', backref='member', lazy='dynamic')

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'referral_code', name='uq_tenant_referral_code'),
        db.UniqueConstraint('tenant_id', 'email', name='uq_tenant_member_email'),
        db.UniqueConstraint('tenant_id', 'phone', name='uq_tenant_member_phone'),
    )

    def __repr__(self):
        return f'<Member {self.id} {self.email or self.phone}>'

    @property
    def tag_list(self) -> list:
        if not self.tags:
            return []
        return [t.strip() for t in self.tags.split(',') if t.strip()]

    def to_dict(self):
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'email': self.email,
            'phone': self.phone,
            'name': self.name,
            'tags': self.tag_list,
            'tier_id': self.tier_id,
            'referral_code': self.referral_code,
            'referred_by_id': self.referred_by_id,
            'order_count': self.order_count,
            'paid_order_count': self.paid_order_count,
            'total_spend': float(self.total_spend or 0),
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class MemberOrder(db.Model):
    """
    One row per (member, external order id).

    ordinal and paid_ordinal are frozen when first assigned so redelivered
    or out-of-order events always see the same position.
    """
    __tablename__ = 'member_orders'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)

    order_id = db.Column(db.String(64), nullable=False)
    order_number = db.Column(db.String(64))
    order_amount = db.Column(db.Numeric(12, 2), default=Decimal('0'))

    ordinal = db.Column(db.Integer, nullable=False)
    paid_ordinal = db.Column(db.Integer)
    cumulative_spend = db.Column(db.Numeric(12, 2))  # member total_spend including this order

    paid_at = db.Column(db.DateTime)
    fulfilled_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('member_id', 'order_id', name='uq_member_order'),
        db.Index('ix_member_orders_tenant_order', 'tenant_id', 'order_id'),
    )

    def __repr__(self):
        return f'<MemberOrder {self.order_id} #{self.ordinal} member={self.member_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'order_id': self.order_id,
            'order_number': self.order_number,
            'order_amount': float(self.order_amount or 0),
            'ordinal': self.ordinal,
            'paid_ordinal': self.paid_ordinal,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'fulfilled_at': self.fulfilled_at.isoformat() if self.fulfilled_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None
        }
