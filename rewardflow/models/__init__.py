"""
Database models for the RewardFlow engine.
"""
from .tenant import Tenant
from .member import Member, MemberOrder
from .loyalty import (
    PointsTransactionType,
    EarningRuleType,
    LoyaltyProgram,
    LoyaltyTier,
    MemberLoyaltyStatus,
    EarningRule,
    LoyaltyPointsTransaction,
)
from .campaign import (
    TriggerResult,
    AllocationStatus,
    ClaimStatus,
    CampaignRule,
    CampaignTriggerLog,
    CampaignAllocation,
    CampaignMemberCounter,
    RewardVoucher,
)
from .membership import MembershipProgram, MemberMembership
from .referral import MemberReferral, ReferralStatus
from .webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    'Tenant',
    'Member',
    'MemberOrder',
    'PointsTransactionType',
    'EarningRuleType',
    'LoyaltyProgram',
    'LoyaltyTier',
    'MemberLoyaltyStatus',
    'EarningRule',
    'LoyaltyPointsTransaction',
    'TriggerResult',
    'AllocationStatus',
    'ClaimStatus',
    'CampaignRule',
    'CampaignTriggerLog',
    'CampaignAllocation',
    'CampaignMemberCounter',
    'RewardVoucher',
    'MembershipProgram',
    'MemberMembership',
    'MemberReferral',
    'ReferralStatus',
    'WebhookEvent',
    'WebhookEventStatus',
]
