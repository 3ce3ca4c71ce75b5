"""
Campaign rule, audit log, allocation and guardrail counter models.
"""
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Dict, Any
from ..extensions import db


class TriggerResult(str, Enum):
    """Outcome recorded for every (order, rule) evaluation."""
    SUCCESS = 'success'
    FAILED = 'failed'
    NO_MEMBER = 'no_member'
    ALREADY_ENROLLED = 'already_enrolled'
    MAX_REACHED = 'max_reached'
    BELOW_THRESHOLD = 'below_threshold'
    BUDGET_EXCEEDED = 'budget_exceeded'
    NOT_MATCHED = 'not_matched'
    EXCLUDED = 'excluded'


class AllocationStatus(str, Enum):
    PENDING = 'pending'          # delayed until fulfillment
    ALLOCATED = 'allocated'
    CANCELLED = 'cancelled'


class ClaimStatus(str, Enum):
    CLAIMED = 'claimed'
    UNCLAIMED = 'unclaimed'


class CampaignRule(db.Model):
    """
    Merchant-defined campaign.

    Each condition group is an ordered JSON array of condition nodes,
    AND-combined. reward_action example:
        {"type": "points", "points": 200, "allocation_timing": "instant",
         "claim_method": "auto"}
    """
    __tablename__ = 'campaign_rules'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)

    name = db.Column(db.String(200), nullable=False)
    trigger_category = db.Column(db.String(50), default='order', nullable=False)

    # Condition groups
    trigger_conditions = db.Column(db.JSON, default=list)
    eligibility_conditions = db.Column(db.JSON, default=list)
    location_conditions = db.Column(db.JSON, default=list)
    attribution_conditions = db.Column(db.JSON, default=list)
    exclusion_rules = db.Column(db.JSON, default=dict)

    reward_action = db.Column(db.JSON, default=dict)

    # Guardrails (NULL = unbounded)
    max_rewards_per_customer = db.Column(db.Integer)
    max_rewards_total = db.Column(db.Integer)
    budget_cap = db.Column(db.Numeric(12, 2))
    budget_spent = db.Column(db.Numeric(12, 2), default=Decimal('0'), nullable=False)

    # Enrollment counter - monotonic, never decremented
    max_enrollments = db.Column(db.Integer)
    current_enrollments = db.Column(db.Integer, default=0, nullable=False)

    priority = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.Index('ix_campaign_rules_tenant_active', 'tenant_id', 'is_active'),
    )

    def __repr__(self):
        return f'<CampaignRule {self.id} {self.name} p={self.priority}>'

    def is_in_window(self, on: date = None) -> bool:
        """Inclusive start/end date check."""
        on = on or datetime.utcnow().date()
        if self.start_date and on < self.start_date:
            return False
        if self.end_date and on > self.end_date:
            return False
        return True

    @property
    def reward_type(self):
        return (self.reward_action or {}).get('type')

    @property
    def allocation_timing(self) -> str:
        return (self.reward_action or {}).get('allocation_timing') or 'instant'

    @property
    def claim_method(self) -> str:
        return (self.reward_action or {}).get('claim_method') or 'auto'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'name': self.name,
            'trigger_category': self.trigger_category,
            'trigger_conditions': self.trigger_conditions or [],
            'eligibility_conditions': self.eligibility_conditions or [],
            'location_conditions': self.location_conditions or [],
            'attribution_conditions': self.attribution_conditions or [],
            'exclusion_rules': self.exclusion_rules or {},
            'reward_action': self.reward_action or {},
            'max_rewards_per_customer': self.max_rewards_per_customer,
            'max_rewards_total': self.max_rewards_total,
            'budget_cap': float(self.budget_cap) if self.budget_cap is not None else None,
            'budget_spent': float(self.budget_spent or 0),
            'max_enrollments': self.max_enrollments,
            'current_enrollments': self.current_enrollments,
            'priority': self.priority,
            'is_active': self.is_active,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class CampaignTriggerLog(db.Model):
    """Audit row written for every (order, rule) evaluation attempt."""
    __tablename__ = 'campaign_trigger_logs'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    campaign_rule_id = db.Column(db.Integer, db.ForeignKey('campaign_rules.id'))
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'))

    order_id = db.Column(db.String(64))
    order_number = db.Column(db.String(64))
    order_value = db.Column(db.Numeric(12, 2))
    customer_email = db.Column(db.String(255))
    customer_phone = db.Column(db.String(50))

    trigger_result = db.Column(db.String(30), nullable=False)  # TriggerResult
    reason = db.Column(db.String(500))
    reward_allocated = db.Column(db.Boolean, default=False)
    details = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index('ix_trigger_logs_tenant_created', 'tenant_id', 'created_at'),
        db.Index('ix_trigger_logs_order', 'tenant_id', 'order_id'),
    )

    def __repr__(self):
        return f'<CampaignTriggerLog rule={self.campaign_rule_id} order={self.order_id} {self.trigger_result}>'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'campaign_rule_id': self.campaign_rule_id,
            'member_id': self.member_id,
            'order_id': self.order_id,
            'order_number': self.order_number,
            'order_value': float(self.order_value) if self.order_value is not None else None,
            'customer_email': self.customer_email,
            'customer_phone': self.customer_phone,
            'trigger_result': self.trigger_result,
            'reason': self.reason,
            'reward_allocated': self.reward_allocated,
            'details': self.details or {},
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class CampaignAllocation(db.Model):
    """
    One row per (order, rule): the allocation idempotency anchor.
    """
    __tablename__ = 'campaign_allocations'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    campaign_rule_id = db.Column(db.Integer, db.ForeignKey('campaign_rules.id'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    order_id = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(20), default=AllocationStatus.ALLOCATED.value, nullable=False)
    claim_status = db.Column(db.String(20), default=ClaimStatus.CLAIMED.value, nullable=False)
    reward_type = db.Column(db.String(20), nullable=False)

    points_awarded = db.Column(db.Integer)
    voucher_id = db.Column(db.Integer, db.ForeignKey('reward_vouchers.id'))
    membership_id = db.Column(db.Integer, db.ForeignKey('member_memberships.id'))
    estimated_cost = db.Column(db.Numeric(12, 2), default=Decimal('0'))
    order_amount = db.Column(db.Numeric(12, 2))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    allocated_at = db.Column(db.DateTime)
    claimed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)

    # Relationships
    campaign_rule = db.relationship('CampaignRule')
    member = db.relationship('Member')
    voucher = db.relationship('RewardVoucher', foreign_keys=[voucher_id])
    membership = db.relationship('MemberMembership')

    __table_args__ = (
        db.UniqueConstraint('order_id', 'campaign_rule_id', name='uq_allocation_order_rule'),
    )

    def __repr__(self):
        return f'<CampaignAllocation {self.id} order={self.order_id} rule={self.campaign_rule_id} {self.status}>'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'campaign_rule_id': self.campaign_rule_id,
            'member_id': self.member_id,
            'order_id': self.order_id,
            'status': self.status,
            'claim_status': self.claim_status,
            'reward_type': self.reward_type,
            'points_awarded': self.points_awarded,
            'voucher_code': self.voucher.code if self.voucher else None,
            'membership_id': self.membership_id,
            'estimated_cost': float(self.estimated_cost or 0),
            'allocated_at': self.allocated_at.isoformat() if self.allocated_at else None,
            'claimed_at': self.claimed_at.isoformat() if self.claimed_at else None
        }


class CampaignMemberCounter(db.Model):
    """Per-customer guardrail counter for a rule."""
    __tablename__ = 'campaign_member_counters'

    id = db.Column(db.Integer, primary_key=True)
    campaign_rule_id = db.Column(db.Integer, db.ForeignKey('campaign_rules.id'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    allocation_count = db.Column(db.Integer, default=0, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('campaign_rule_id', 'member_id', name='uq_counter_rule_member'),
    )

    def __repr__(self):
        return f'<CampaignMemberCounter rule={self.campaign_rule_id} member={self.member_id} n={self.allocation_count}>'


class RewardVoucher(db.Model):
    """Voucher code issued by a campaign allocation."""
    __tablename__ = 'reward_vouchers'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    campaign_rule_id = db.Column(db.Integer, db.ForeignKey('campaign_rules.id'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)

    code = db.Column(db.String(64), nullable=False)
    is_generic = db.Column(db.Boolean, default=False)  # shared code from reward_action.generic_code
    discount_type = db.Column(db.String(20))  # percentage, fixed_amount, free_shipping
    discount_value = db.Column(db.Numeric(10, 2))
    expires_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index('ix_reward_vouchers_tenant_code', 'tenant_id', 'code'),
    )

    def __repr__(self):
        return f'<RewardVoucher {self.code}>'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'code': self.code,
            'is_generic': self.is_generic,
            'discount_type': self.discount_type,
            'discount_value': float(self.discount_value) if self.discount_value is not None else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None
        }
