"""
Loyalty points API endpoints.

Storefront (shop identified by shop_domain in the body):
    POST /api/loyalty/redemption-check       can this customer redeem N points
    POST /api/loyalty/redeem                 debit points for a discount

Admin (session token):
    GET  /api/loyalty/members/<id>/balance   balance lookup
    POST /api/loyalty/members/<id>/adjust    manual +/- adjustment
"""
from flask import Blueprint, request, jsonify, g

from ..models.member import Member
from ..models.tenant import Tenant
from ..middleware.shopify_auth import require_shopify_auth
from ..services.member_service import MemberService
from ..services.points_service import PointsService, check_redemption
from ..utils.errors import bad_request, error_response, not_found, ErrorCode

loyalty_bp = Blueprint('loyalty', __name__)

ERROR_STATUS = {
    'shop_not_found': 404,
    'member_not_found': 404,
}


def _points(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@loyalty_bp.route('/redemption-check', methods=['POST'])
def redemption_check():
    """
    Request body: customer_email, shop_domain, points_to_redeem.

    Returns {valid, current_balance, discount_value, remaining_after} or
    {valid: false, error: insufficient_points | member_not_found |
    redemption_disabled | shop_not_found | invalid_points}.
    """
    data = request.get_json(silent=True) or {}
    result = check_redemption(
        (data.get('shop_domain') or '').strip().lower(),
        data.get('customer_email'),
        data.get('points_to_redeem'),
    )
    if result.get('valid'):
        return jsonify(result)
    return jsonify(result), ERROR_STATUS.get(result.get('error'), 400)


@loyalty_bp.route('/redeem', methods=['POST'])
def redeem():
    """
    Debit points for a storefront redemption.

    Request body:
        shop_domain, customer_email (or customer_phone), points
        idempotency_key: required; a retried request with the same key
            returns the original debit instead of taking points twice
        reference_id: Optional, e.g. the discount code issued

    Errors (flat body {"success": false, "error": code}):
        shop_not_found, member_not_found (404), invalid_points,
        insufficient_points, redemption_disabled, no_loyalty_program (400)
    """
    data = request.get_json(silent=True) or {}
    shop_domain = (data.get('shop_domain') or '').strip().lower()
    tenant = Tenant.query.filter_by(shopify_domain=shop_domain, is_active=True).first() if shop_domain else None
    if not tenant:
        return jsonify({'success': False, 'error': ErrorCode.SHOP_NOT_FOUND.storefront}), 404

    idempotency_key = (data.get('idempotency_key') or '').strip()
    if not idempotency_key:
        return jsonify({'success': False, 'error': ErrorCode.MISSING_FIELD.storefront,
                        'message': 'idempotency_key is required'}), 400

    points = _points(data.get('points'))
    if points is None or points <= 0:
        return jsonify({'success': False, 'error': ErrorCode.INVALID_POINTS.storefront}), 400

    member = MemberService(tenant.id).find_member(data.get('customer_email'), data.get('customer_phone'))
    if not member:
        return jsonify({'success': False, 'error': ErrorCode.MEMBER_NOT_FOUND.storefront}), 404

    result = PointsService(tenant.id).redeem_points(
        member, points,
        reference_id=data.get('reference_id'),
        idempotency_key=f'redeem:{tenant.id}:{idempotency_key}',
    )
    if not result.get('success'):
        return jsonify(result), ERROR_STATUS.get(result.get('error'), 400)
    return jsonify(result)


@loyalty_bp.route('/members/<int:member_id>/balance', methods=['GET'])
@require_shopify_auth
def member_balance(member_id):
    member = Member.query.filter_by(id=member_id, tenant_id=g.tenant_id).first()
    if not member:
        return not_found('Member not found', ErrorCode.MEMBER_NOT_FOUND)

    service = PointsService(g.tenant_id)
    program = service.get_program()
    status = service.get_status(member.id, program.id) if program else None
    return jsonify({
        'member_id': member.id,
        'program_id': program.id if program else None,
        'balance': service.get_balance(member.id) if program else 0,
        'lifetime_points_earned': status.lifetime_points_earned if status else 0,
        'lifetime_points_redeemed': status.lifetime_points_redeemed if status else 0,
    })


@loyalty_bp.route('/members/<int:member_id>/adjust', methods=['POST'])
@require_shopify_auth
def adjust_member_points(member_id):
    """
    Manual adjustment by a merchant.

    Request body:
        points: Non-zero integer, negative to debit
        reason: Shown on the ledger entry
        idempotency_key: Optional
    """
    data = request.get_json(silent=True) or {}
    points = _points(data.get('points'))
    if not points:
        return bad_request('points must be a non-zero integer', ErrorCode.INVALID_POINTS)
    reason = (data.get('reason') or '').strip()
    if not reason:
        return bad_request('reason is required', ErrorCode.MISSING_FIELD)

    member = Member.query.filter_by(id=member_id, tenant_id=g.tenant_id).first()
    if not member:
        return not_found('Member not found', ErrorCode.MEMBER_NOT_FOUND)

    idempotency_key = data.get('idempotency_key')
    result = PointsService(g.tenant_id).adjust_points(
        member, points, reason,
        idempotency_key=f'adjust:{g.tenant_id}:{idempotency_key}' if idempotency_key else None,
    )
    if not result.get('success'):
        code = ErrorCode.from_storefront(result.get('error'))
        return error_response(f"Adjustment rejected: {result.get('error')}", code, 400, log_error=False)
    return jsonify(result)
