"""
Campaign admin API endpoints.

GET  /api/campaigns/trigger-logs               audit trail of rule evaluations
POST /api/campaigns/rules/validate             save-time rule validation
POST /api/campaigns/evaluate                   dry run against an order payload
POST /api/campaigns/allocations/<id>/claim     claim a click-to-claim reward
"""
from flask import Blueprint, request, jsonify, g

from ..engine.conditions import validate_rule_config
from ..engine.facts import OrderFact
from ..models.campaign import CampaignRule, CampaignAllocation, TriggerResult
from ..middleware.shopify_auth import require_shopify_auth
from ..services.campaign_service import CampaignService
from ..services.allocation_service import AllocationService
from ..services.member_service import MemberService
from ..utils.errors import bad_request, not_found, ErrorCode

campaigns_bp = Blueprint('campaigns', __name__)

TRIGGER_RESULTS = {r.value for r in TriggerResult}


@campaigns_bp.route('/trigger-logs', methods=['GET'])
@require_shopify_auth
def get_trigger_logs():
    """
    Query params:
        rule_id: Filter by campaign rule
        order_id: Filter by external order id
        result: Filter by trigger result (success, max_reached, ...)
        limit: Max rows (default 100, max 500)
    """
    result = request.args.get('result')
    if result and result not in TRIGGER_RESULTS:
        return bad_request(f'Unknown result filter: {result}', ErrorCode.VALIDATION_ERROR)

    logs = CampaignService(g.tenant).trigger_logs(
        rule_id=request.args.get('rule_id', type=int),
        order_id=request.args.get('order_id'),
        result=result,
        limit=request.args.get('limit', 100, type=int),
    )
    return jsonify({
        'logs': [log.to_dict() for log in logs],
        'count': len(logs),
    })


@campaigns_bp.route('/rules/validate', methods=['POST'])
@require_shopify_auth
def validate_rule():
    """
    Validate a rule before saving.

    Body is the rule config (condition groups, exclusion_rules,
    reward_action, guardrails), or {"rule_id": N} to re-check a stored rule
    against the shop's current scopes.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return bad_request('Request body must be a JSON object')

    if data.get('rule_id'):
        rule = CampaignRule.query.filter_by(id=data['rule_id'], tenant_id=g.tenant_id).first()
        if not rule:
            return not_found('Campaign rule not found', ErrorCode.RULE_NOT_FOUND)
        report = validate_rule_config(rule, g.tenant.scope_set)
    else:
        report = validate_rule_config(data, g.tenant.scope_set)

    return jsonify(report.to_dict()), 200 if report.valid else 422


@campaigns_bp.route('/evaluate', methods=['POST'])
@require_shopify_auth
def evaluate_order():
    """
    Dry-run every rule against an order payload without allocating.

    Body: {"order": {...webhook payload...}}; the customer's stored history is
    used when the order's email/phone matches a member.
    """
    data = request.get_json(silent=True) or {}
    payload = data.get('order')
    if not isinstance(payload, dict):
        return bad_request('order is required', ErrorCode.MISSING_FIELD)

    order = OrderFact.from_payload(payload)
    member = MemberService(g.tenant_id).find_member(order.customer_email, order.customer_phone)
    result = CampaignService(g.tenant).dry_run(order, member)
    result['member_id'] = member.id if member else None
    return jsonify(result)


@campaigns_bp.route('/allocations/<int:allocation_id>/claim', methods=['POST'])
@require_shopify_auth
def claim_allocation(allocation_id):
    result = AllocationService(g.tenant_id).claim(allocation_id)
    if not result['success']:
        if result['error'] == 'allocation_not_found':
            return not_found('Allocation not found', ErrorCode.ALLOCATION_NOT_FOUND)
        return bad_request(f"Allocation cannot be claimed: {result['error']}",
                           ErrorCode.from_storefront(result['error']))
    return jsonify(result)


@campaigns_bp.route('/allocations', methods=['GET'])
@require_shopify_auth
def list_allocations():
    """Allocations for one order (?order_id=) or the most recent ones."""
    query = CampaignAllocation.query.filter_by(tenant_id=g.tenant_id)
    order_id = request.args.get('order_id')
    if order_id:
        query = query.filter_by(order_id=order_id)
    limit = min(request.args.get('limit', 50, type=int), 200)
    allocations = query.order_by(CampaignAllocation.id.desc()).limit(limit).all()
    return jsonify({'allocations': [a.to_dict() for a in allocations]})
