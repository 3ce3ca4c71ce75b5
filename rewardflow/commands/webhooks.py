"""
CLI Commands for webhook ingestion.
"""
import click
from flask.cli import with_appcontext

from ..models.webhook_event import WebhookEvent, WebhookEventStatus
from ..services.ingestion_service import replay_parked


@click.group('webhooks')
def webhooks_cli():
    """Webhook ingestion commands."""
    pass


@webhooks_cli.command('replay-parked')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@click.option('--limit', type=int, default=100, show_default=True, help='Max events to replay')
@with_appcontext
def replay_parked_events(tenant_id, limit):
    """Reprocess events parked after repeated transient failures."""
    counts = replay_parked(tenant_id=tenant_id, limit=limit)
    click.echo(f"Replayed: {counts['processed']} processed, {counts['parked']} still parked")


@webhooks_cli.command('list-parked')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def list_parked_events(tenant_id):
    """Show parked events with their last error."""
    query = WebhookEvent.query.filter_by(status=WebhookEventStatus.PARKED.value)
    if tenant_id:
        query = query.filter_by(tenant_id=tenant_id)
    events = query.order_by(WebhookEvent.id).all()
    if not events:
        click.echo("No parked events")
        return
    for event in events:
        click.echo(
            f"  #{event.id} tenant={event.tenant_id} {event.topic} order={event.order_id} "
            f"attempts={event.attempts} error={event.last_error}"
        )


def init_app(app):
    """Register webhook commands with Flask app."""
    app.cli.add_command(webhooks_cli)
