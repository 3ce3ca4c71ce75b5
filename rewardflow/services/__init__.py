"""
Business logic services for the RewardFlow engine.
"""
from .rule_selector import RuleSelector
from .guardrail_service import GuardrailService
from .points_service import PointsService
from .allocation_service import AllocationService
from .order_ledger import OrderLedger
from .member_service import MemberService
from .referral_service import ReferralService
from .campaign_service import CampaignService
from .ingestion_service import IngestionService

__all__ = [
    'RuleSelector',
    'GuardrailService',
    'PointsService',
    'AllocationService',
    'OrderLedger',
    'MemberService',
    'ReferralService',
    'CampaignService',
    'IngestionService'
]
