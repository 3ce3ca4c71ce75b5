"""
Request authentication middleware.
"""
from .shopify_auth import require_shopify_auth, decode_session_token, get_shop_from_token

__all__ = ['require_shopify_auth', 'decode_session_token', 'get_shop_from_token']
