"""
API blueprints for RewardFlow.
"""
from .referrals import referrals_bp
from .loyalty import loyalty_bp
from .campaigns import campaigns_bp

__all__ = ['referrals_bp', 'loyalty_bp', 'campaigns_bp']
