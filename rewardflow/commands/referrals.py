"""
CLI Commands for referrals.

Cron alternative to the in-process scheduler:

# Referral expiry (run daily at 2 AM)
0 2 * * * cd /app && flask referrals expire
"""
from datetime import datetime

import click
from flask.cli import with_appcontext

from ..extensions import db
from ..models.referral import MemberReferral, ReferralStatus
from ..services.referral_service import ReferralService


@click.group('referrals')
def referrals_cli():
    """Referral maintenance commands."""
    pass


@referrals_cli.command('expire')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@click.option('--dry-run', is_flag=True, help='Count stale referrals without expiring them')
@with_appcontext
def expire_referrals(tenant_id, dry_run):
    """Expire pending referrals whose validity window has passed."""
    if dry_run:
        query = MemberReferral.query.filter(
            MemberReferral.status == ReferralStatus.PENDING.value,
            MemberReferral.expires_at < datetime.utcnow(),
        )
        if tenant_id:
            query = query.filter(MemberReferral.tenant_id == tenant_id)
        click.echo(f"[DRY RUN] {query.count()} pending referrals would expire")
        return

    expired = ReferralService.expire_stale_referrals(tenant_id=tenant_id)
    click.echo(f"Expired {expired} pending referrals")


@referrals_cli.command('stats')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@with_appcontext
def referral_stats(tenant_id):
    """Referral counts by status."""
    rows = db.session.query(
        MemberReferral.status, db.func.count(MemberReferral.id)
    ).filter(
        MemberReferral.tenant_id == tenant_id
    ).group_by(MemberReferral.status).all()

    counts = dict(rows)
    click.echo(f"Tenant {tenant_id} referrals:")
    for status in ReferralStatus:
        click.echo(f"  {status.value}: {counts.get(status.value, 0)}")


def init_app(app):
    """Register referral commands with Flask app."""
    app.cli.add_command(referrals_cli)
