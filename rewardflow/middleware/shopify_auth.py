"""
Shopify Session Token Authentication Middleware.

Admin endpoints are called from the embedded app with a Shopify App Bridge
session token (JWT, HS256, signed with the app secret):
- dest: shop URL (https://shop.myshopify.com)
- aud: API key
- sub: staff member GID
- exp: expiry

The shop query param / X-Shop-Domain header fallback is only honoured when
ALLOW_SHOP_DOMAIN_AUTH is on (development and tests).
"""
import logging
import jwt
from functools import wraps
from typing import Optional
from flask import request, g, current_app
from ..models import Tenant
from ..utils.errors import unauthorized, ErrorCode

logger = logging.getLogger(__name__)


def decode_session_token(token: str) -> Optional[dict]:
    """Decode and verify a session token; None if invalid or expired."""
    if not token:
        return None

    api_key = current_app.config.get('SHOPIFY_API_KEY')
    try:
        return jwt.decode(
            token,
            current_app.config.get('SHOPIFY_API_SECRET'),
            algorithms=['HS256'],
            audience=api_key or None,
            options={
                'verify_aud': bool(api_key),
                'verify_exp': True,
            }
        )
    except jwt.ExpiredSignatureError:
        logger.info('Session token expired')
    except jwt.InvalidAudienceError:
        logger.warning('Invalid session token audience')
    except jwt.InvalidTokenError as e:
        logger.warning(f'Invalid session token: {e}')
    return None


def get_shop_from_token(payload: dict) -> Optional[str]:
    """dest (or iss) looks like https://shop.myshopify.com/admin."""
    for claim in ('dest', 'iss'):
        value = payload.get(claim, '')
        if value:
            value = value.replace('https://', '').replace('http://', '')
            return value.split('/')[0]
    return None


def require_shopify_auth(f):
    """
    Require an authenticated shop.

    Sets g.tenant, g.tenant_id, g.shop, g.staff_id and g.auth_method.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        shop = None
        staff_id = None
        auth_method = None

        auth_header = request.headers.get('Authorization', '')
        if auth_header.startswith('Bearer '):
            payload = decode_session_token(auth_header.split(' ', 1)[1])
            if payload:
                shop = get_shop_from_token(payload)
                staff_id = payload.get('sub')
                auth_method = 'session_token'

        if not shop and current_app.config.get('ALLOW_SHOP_DOMAIN_AUTH'):
            shop = request.args.get('shop') or request.headers.get('X-Shop-Domain')
            if shop:
                auth_method = 'shop_domain'

        if not shop:
            return unauthorized('Authentication required')

        tenant = Tenant.query.filter_by(shopify_domain=shop.strip().lower(), is_active=True).first()
        if not tenant:
            logger.warning(f'Authenticated request for unknown shop {shop}')
            return unauthorized('Shop not installed', ErrorCode.SHOP_NOT_FOUND)

        g.tenant = tenant
        g.tenant_id = tenant.id
        g.shop = tenant.shopify_domain
        g.staff_id = staff_id
        g.auth_method = auth_method
        return f(*args, **kwargs)

    return decorated_function
