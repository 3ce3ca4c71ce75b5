"""
Referral Program API endpoints.

Storefront (public, shop identified by shop_domain in the body):
    POST /api/referrals/apply      record a pending referral
    POST /api/referrals/validate   preview a referral code

Admin (session token):
    POST /api/referrals/complete   complete a referral by hand
"""
from flask import Blueprint, request, jsonify, current_app, g

from ..models.member import Member
from ..models.referral import MemberReferral
from ..middleware.shopify_auth import require_shopify_auth
from ..services.referral_service import ReferralService, get_tenant_by_domain
from ..utils.errors import domain_error, bad_request, not_found, ErrorCode
from ..utils.exceptions import ReferralError, ValidationError

referrals_bp = Blueprint('referrals', __name__)


# ==================== STOREFRONT ENDPOINTS ====================

@referrals_bp.route('/apply', methods=['POST'])
def apply_referral_code():
    """
    Apply a referral code for a prospective customer.

    Request body:
        shop_domain: Shop's myshopify domain
        referral_code: Referrer's code
        referred_email / referred_phone: at least one is required
        referred_name: Optional

    Errors (flat body {"error": code, "message": ...}):
        shop_not_found, invalid_code (404), self_referral, already_referred (400)
    """
    data = request.get_json(silent=True) or {}
    referral_code = (data.get('referral_code') or '').strip()
    if not referral_code:
        return domain_error('invalid_code', 'referral_code is required', 400)

    try:
        tenant = get_tenant_by_domain(data.get('shop_domain'))
        result = ReferralService(tenant.id).apply_referral(
            referral_code,
            referred_email=data.get('referred_email'),
            referred_phone=data.get('referred_phone'),
            referred_name=data.get('referred_name'),
        )
    except ReferralError as e:
        current_app.logger.info(f'Referral code {referral_code} rejected: {e.code}')
        return domain_error(e.code, e.message, e.status_code)
    except ValidationError as e:
        return domain_error('invalid_request', e.message, 400)

    return jsonify(result), 201


@referrals_bp.route('/validate', methods=['POST'])
def validate_referral_code():
    """Check a code before the customer submits it."""
    data = request.get_json(silent=True) or {}
    try:
        tenant = get_tenant_by_domain(data.get('shop_domain'))
        return jsonify(ReferralService(tenant.id).validate_code(data.get('referral_code')))
    except ReferralError as e:
        return domain_error(e.code, e.message, e.status_code)


# ==================== ADMIN ENDPOINTS ====================

@referrals_bp.route('/complete', methods=['POST'])
@require_shopify_auth
def complete_referral():
    """
    Complete the pending referral for a referee.

    Request body:
        member_user_id: Referee member ID (member_id is accepted too)
        loyalty_program_id: Optional, defaults to the active program
        order_id, order_amount: Optional, the referee's first paid order
    """
    data = request.get_json(silent=True) or {}
    member_id = data.get('member_user_id') or data.get('member_id')
    if not member_id:
        return bad_request('member_user_id is required', ErrorCode.MISSING_FIELD)

    member = Member.query.filter_by(id=member_id, tenant_id=g.tenant_id).first()
    if not member:
        return not_found('Member not found', ErrorCode.MEMBER_NOT_FOUND)

    result = ReferralService(g.tenant_id).complete_referral(
        member.id,
        loyalty_program_id=data.get('loyalty_program_id'),
        order_id=data.get('order_id'),
        order_amount=data.get('order_amount'),
    )
    return jsonify(result)


@referrals_bp.route('', methods=['GET'])
@require_shopify_auth
def list_referrals():
    """Recent referrals for the shop, newest first. Optional ?status= filter."""
    query = MemberReferral.query.filter_by(tenant_id=g.tenant_id)
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)
    limit = min(request.args.get('limit', 50, type=int), 200)
    referrals = query.order_by(MemberReferral.created_at.desc(), MemberReferral.id.desc()).limit(limit).all()
    return jsonify({
        'referrals': [r.to_dict() for r in referrals],
        'total': query.count(),
    })
