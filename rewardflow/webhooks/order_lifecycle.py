"""
Order lifecycle webhook handlers.

POST /webhook/orders/create     record order, run campaigns
POST /webhook/orders/paid       freeze paid ordinal, earn points, complete referral
POST /webhook/orders/fulfilled  release delayed campaign rewards
POST /webhook/orders/cancelled  cancel pending campaign rewards

Shopify retries anything that is not 2xx, so a handler answers 200 for
processed, duplicate and parked events and 500 only when the event could
not be recorded at all.
"""
from flask import Blueprint, request, jsonify, current_app, g
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..services.ingestion_service import IngestionService
from . import require_webhook_verification


order_lifecycle_bp = Blueprint('order_lifecycle', __name__)


def _handle(topic: str):
    tenant = g.webhook_tenant
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400

    event_id = request.headers.get('X-Shopify-Webhook-Id')
    try:
        result = IngestionService(tenant).ingest(topic, payload, event_id=event_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f'Could not record {topic} webhook for {tenant.shopify_domain}: {e}')
        return jsonify({'error': 'Event could not be recorded'}), 500

    current_app.logger.info(
        f"{topic} webhook for order {payload.get('id', payload.get('order_id'))}: {result['status']}"
    )
    return jsonify({'success': True, **result})


@order_lifecycle_bp.route('/orders/create', methods=['POST'])
@require_webhook_verification
def handle_order_created():
    """Handle ORDERS_CREATE webhook."""
    return _handle('orders/create')


@order_lifecycle_bp.route('/orders/paid', methods=['POST'])
@require_webhook_verification
def handle_order_paid():
    """Handle ORDERS_PAID webhook."""
    return _handle('orders/paid')


@order_lifecycle_bp.route('/orders/fulfilled', methods=['POST'])
@require_webhook_verification
def handle_order_fulfilled():
    """Handle ORDERS_FULFILLED webhook."""
    return _handle('orders/fulfilled')


@order_lifecycle_bp.route('/orders/cancelled', methods=['POST'])
@require_webhook_verification
def handle_order_cancelled():
    """Handle ORDERS_CANCELLED webhook."""
    return _handle('orders/cancelled')
