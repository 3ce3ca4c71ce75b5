"""
CLI Commands for RewardFlow.

Usage:
    flask referrals expire                     # Expire stale pending referrals
    flask referrals expire --tenant-id 1 --dry-run
    flask webhooks replay-parked               # Retry parked webhook events
    flask webhooks list-parked --tenant-id 1   # Show parked events
"""
from .referrals import init_app as init_referral_commands
from .webhooks import init_app as init_webhook_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_referral_commands(app)
    init_webhook_commands(app)
