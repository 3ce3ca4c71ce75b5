"""
Shopify webhook handlers for RewardFlow.
"""
import hmac
import hashlib
import base64
from functools import wraps
from flask import request, jsonify, current_app, g
from ..models import Tenant


def verify_shopify_webhook_signature(data: bytes, hmac_header: str, secret: str) -> bool:
    """
    Verify a Shopify webhook HMAC-SHA256 signature.

    Shopify signs the raw body with the app/webhook secret and sends the
    base64 digest in X-Shopify-Hmac-SHA256. Comparison is constant time.
    """
    if not secret:
        current_app.logger.warning('No webhook secret configured for verification')
        return False

    if not hmac_header:
        current_app.logger.warning('No HMAC header in webhook request')
        return False

    computed_hmac = base64.b64encode(
        hmac.new(secret.encode('utf-8'), data, hashlib.sha256).digest()
    ).decode('utf-8')
    return hmac.compare_digest(computed_hmac, hmac_header)


def require_webhook_verification(f):
    """
    Resolve the tenant from X-Shopify-Shop-Domain and verify the signature.

    Sets g.webhook_tenant and g.tenant_id for the handler. Verification is
    skipped only when SKIP_WEBHOOK_VERIFICATION is on (local development).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        shop_domain = request.headers.get('X-Shopify-Shop-Domain', '').strip().lower()
        if not shop_domain:
            current_app.logger.warning('Webhook missing X-Shopify-Shop-Domain header')
            return jsonify({'error': 'Missing shop domain header'}), 400

        tenant = Tenant.query.filter_by(shopify_domain=shop_domain).first()
        if not tenant or not tenant.is_active:
            current_app.logger.warning(f'Webhook from unknown shop: {shop_domain}')
            return jsonify({'error': 'Unknown shop'}), 404

        g.webhook_tenant = tenant
        g.tenant_id = tenant.id

        if current_app.config.get('SKIP_WEBHOOK_VERIFICATION'):
            current_app.logger.debug('Skipping webhook verification (SKIP_WEBHOOK_VERIFICATION)')
            return f(*args, **kwargs)

        hmac_header = request.headers.get('X-Shopify-Hmac-SHA256', '')
        webhook_secret = tenant.webhook_secret or current_app.config.get('SHOPIFY_API_SECRET')

        if not verify_shopify_webhook_signature(request.get_data(), hmac_header, webhook_secret):
            current_app.logger.warning(f'Invalid webhook signature from {shop_domain}')
            return jsonify({'error': 'Invalid signature'}), 401

        return f(*args, **kwargs)

    return decorated_function


from .order_lifecycle import order_lifecycle_bp

__all__ = [
    'order_lifecycle_bp',
    'verify_shopify_webhook_signature',
    'require_webhook_verification',
]
