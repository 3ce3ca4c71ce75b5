"""
Loyalty points models for RewardFlow.

- LoyaltyProgram holds the earn formula (rate per divisor) and point value
- LoyaltyTier carries the tier earn multiplier
- MemberLoyaltyStatus caches the member balance; it is only changed by
  conditional UPDATEs in services/points_service.py
- LoyaltyPointsTransaction is the immutable ledger
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Any
from ..extensions import db


class PointsTransactionType(str, Enum):
    """Types of points transactions."""
    EARNED = 'earned'           # Purchase earning (positive)
    REDEEMED = 'redeemed'       # Redemption (negative)
    BONUS = 'bonus'             # Referral / campaign credit (positive)
    ADJUSTMENT = 'adjustment'   # Manual adjustment (+/-)
    EXPIRED = 'expired'         # Expired points (negative)


class EarningRuleType(str, Enum):
    """Fixed-amount earn rules looked up by the referral flow."""
    REFERRAL = 'referral'                      # credited to the referrer
    REFERRAL_COMPLETE = 'referral_complete'    # credited to the referee


class LoyaltyProgram(db.Model):
    """
    Points program configuration for a tenant.

    points = floor(floor(order_amount / points_earn_divisor) * points_earn_rate * tier multiplier)
    """
    __tablename__ = 'loyalty_programs'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)

    name = db.Column(db.String(100), default='Rewards')
    points_earn_rate = db.Column(db.Numeric(10, 4), default=Decimal('1'), nullable=False)
    points_earn_divisor = db.Column(db.Numeric(10, 2), default=Decimal('1'), nullable=False)
    points_value = db.Column(db.Numeric(10, 4), default=Decimal('0.01'), nullable=False)  # currency per point

    allow_redemption = db.Column(db.Boolean, default=True)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tiers = db.relationship('LoyaltyTier', backref='program', lazy='dynamic')
    earning_rules = db.relationship('EarningRule', backref='program', lazy='dynamic')

    def __repr__(self):
        return f'<LoyaltyProgram {self.id} tenant={self.tenant_id}>'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'name': self.name,
            'points_earn_rate': float(self.points_earn_rate),
            'points_earn_divisor': float(self.points_earn_divisor),
            'points_value': float(self.points_value),
            'allow_redemption': self.allow_redemption,
            'is_active': self.is_active
        }


class LoyaltyTier(db.Model):
    """Loyalty tier with an earn multiplier and optional point value override."""
    __tablename__ = 'loyalty_tiers'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    program_id = db.Column(db.Integer, db.ForeignKey('loyalty_programs.id'), nullable=False)

    name = db.Column(db.String(50), nullable=False)  # 'Bronze', 'Silver', 'Gold'
    points_multiplier = db.Column(db.Numeric(5, 2), default=Decimal('1'), nullable=False)
    points_value = db.Column(db.Numeric(10, 4))  # NULL = use program value
    is_default = db.Column(db.Boolean, default=False)
    display_order = db.Column(db.Integer, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<LoyaltyTier {self.name}>'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'program_id': self.program_id,
            'name': self.name,
            'points_multiplier': float(self.points_multiplier),
            'points_value': float(self.points_value) if self.points_value is not None else None,
            'is_default': self.is_default
        }


class MemberLoyaltyStatus(db.Model):
    """Per-member, per-program balance cache."""
    __tablename__ = 'member_loyalty_status'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    program_id = db.Column(db.Integer, db.ForeignKey('loyalty_programs.id'), nullable=False)
    current_tier_id = db.Column(db.Integer, db.ForeignKey('loyalty_tiers.id'))

    points_balance = db.Column(db.Integer, default=0, nullable=False)
    lifetime_points_earned = db.Column(db.Integer, default=0, nullable=False)
    lifetime_points_redeemed = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    member = db.relationship('Member', backref=db.backref('loyalty_statuses', lazy='dynamic'))
    program = db.relationship('LoyaltyProgram')
    current_tier = db.relationship('LoyaltyTier')

    __table_args__ = (
        db.UniqueConstraint('member_id', 'program_id', name='uq_member_loyalty_program'),
    )

    def __repr__(self):
        return f'<MemberLoyaltyStatus member={self.member_id} balance={self.points_balance}>'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'member_id': self.member_id,
            'program_id': self.program_id,
            'current_tier_id': self.current_tier_id,
            'points_balance': self.points_balance,
            'lifetime_points_earned': self.lifetime_points_earned,
            'lifetime_points_redeemed': self.lifetime_points_redeemed
        }


class EarningRule(db.Model):
    """Fixed-amount earn rule keyed by rule_type (see EarningRuleType)."""
    __tablename__ = 'earning_rules'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    program_id = db.Column(db.Integer, db.ForeignKey('loyalty_programs.id'), nullable=False)

    rule_type = db.Column(db.String(50), nullable=False)
    points = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<EarningRule {self.rule_type}: {self.points} pts>'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'program_id': self.program_id,
            'rule_type': self.rule_type,
            'points': self.points,
            'is_active': self.is_active
        }


class LoyaltyPointsTransaction(db.Model):
    """
    Points ledger - the authoritative record of all points changes.

    Design notes:
    - Immutable once created
    - points_amount is signed
    - balance_after is written while the status row is held by the
      conditional balance update, so the latest row is authoritative
    - idempotency_key makes credits safe under redelivery
    """
    __tablename__ = 'loyalty_points_transactions'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    member_loyalty_status_id = db.Column(
        db.Integer, db.ForeignKey('member_loyalty_status.id'), nullable=False
    )
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)

    transaction_type = db.Column(db.String(20), nullable=False)  # PointsTransactionType
    points_amount = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)

    order_amount = db.Column(db.Numeric(12, 2))
    reference_id = db.Column(db.String(100))  # order id, referral id, allocation id
    idempotency_key = db.Column(db.String(150), unique=True)
    description = db.Column(db.String(500))

    expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index('ix_loyalty_tx_member_created', 'member_id', 'created_at'),
    )

    def __repr__(self):
        return f'<LoyaltyPointsTransaction {self.id}: {self.points_amount:+d} pts member={self.member_id}>'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'member_id': self.member_id,
            'transaction_type': self.transaction_type,
            'points_amount': self.points_amount,
            'balance_after': self.balance_after,
            'order_amount': float(self.order_amount) if self.order_amount is not None else None,
            'reference_id': self.reference_id,
            'description': self.description,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
