"""
Campaign pipeline: selector -> guardrails -> allocator -> audit log.

Every evaluated (order, rule) pair gets a CampaignTriggerLog row, whatever
the outcome. Log rows are written in their own transaction after the
allocation transaction has committed or rolled back.
"""
import logging
from typing import Optional, Dict, Any, List

from flask import current_app

from ..extensions import db
from ..engine.facts import OrderFact, CustomerFact
from ..models.tenant import Tenant
from ..models.member import Member, MemberOrder
from ..models.campaign import CampaignRule, CampaignTriggerLog, TriggerResult
from ..utils.exceptions import RewardFlowError
from .allocation_service import AllocationService
from .rule_selector import RuleSelector, Selection, eligible_rules

logger = logging.getLogger(__name__)

MAX_LOG_LIMIT = 500


def multi_fire_enabled(tenant: Tenant) -> bool:
    """Tenant setting wins over the app-wide CAMPAIGN_MULTI_FIRE flag."""
    override = tenant.campaign_setting('multi_fire')
    if override is not None:
        return bool(override)
    return bool(current_app.config.get('CAMPAIGN_MULTI_FIRE', False))


class CampaignService:
    def __init__(self, tenant: Tenant):
        self.tenant = tenant
        self.tenant_id = tenant.id
        self.allocator = AllocationService(tenant.id)

    def rules(self, trigger_category: str = None) -> List[CampaignRule]:
        query = CampaignRule.query.filter_by(tenant_id=self.tenant_id)
        if trigger_category:
            query = query.filter_by(trigger_category=trigger_category)
        return query.all()

    def select(self, order: OrderFact, customer: CustomerFact, trigger_category: str = None) -> Selection:
        selector = RuleSelector(multi_fire=multi_fire_enabled(self.tenant))
        return selector.select(self.rules(trigger_category), order, customer, self.tenant.scope_set)

    # ==================== Pipeline ====================

    def process_order(
        self,
        order: OrderFact,
        member: Member,
        member_order: MemberOrder = None,
        trigger_category: str = None
    ) -> Dict[str, Any]:
        """Evaluate, allocate and log every rule for one order."""
        tenant_id, member_id = self.tenant_id, member.id
        if member_order is not None:
            customer = CustomerFact.from_member_order(member, member_order, order)
        else:
            customer = CustomerFact.from_order(order)

        selection = self.select(order, customer, trigger_category)
        outcomes = []

        for evaluation in selection.evaluations:
            rule = evaluation.rule
            rule_id = rule.id
            details = evaluation.details()

            if not evaluation.allocate:
                outcomes.append(self._log(order, rule_id, member_id, evaluation.result,
                                          evaluation.reason, False, details))
                continue

            try:
                result = self.allocator.allocate(rule, order, member)
            except RewardFlowError as e:
                db.session.rollback()
                logger.error(f"Allocation failed for rule {rule_id} order {order.order_id}: {e.message}")
                outcomes.append(self._log(order, rule_id, member_id, TriggerResult.FAILED.value,
                                          e.message, False, details))
                continue

            if result.allocation is not None:
                details['allocation_id'] = result.allocation.id
                details['allocation_status'] = result.allocation.status
            details['duplicate'] = result.duplicate
            outcomes.append(self._log(order, rule_id, member_id, result.result, result.reason,
                                      result.success, details))

        allocated = [o for o in outcomes if o['reward_allocated']]
        logger.info(
            f"Tenant {tenant_id} order {order.order_id}: evaluated {len(outcomes)} rules, "
            f"allocated {len(allocated)}"
        )
        return {
            'order_id': order.order_id,
            'member_id': member_id,
            'evaluated': len(outcomes),
            'allocated': len(allocated),
            'results': outcomes,
        }

    def log_no_member(self, order: OrderFact, reason: str = None) -> int:
        """One no_member row per eligible rule when the order has no usable customer."""
        reason = reason or (
            f"No member found with phone: {order.customer_phone or 'none'}, "
            f"email: {order.customer_email or 'none'}"
        )
        count = 0
        for rule in eligible_rules(self.rules()):
            self._log(order, rule.id, None, TriggerResult.NO_MEMBER.value, reason, False,
                      {'rule_name': rule.name})
            count += 1
        return count

    def dry_run(self, order: OrderFact, member: Optional[Member] = None) -> Dict[str, Any]:
        """Evaluate without reserving, allocating or logging."""
        customer = CustomerFact.from_order(order)
        if member is not None:
            customer = CustomerFact(
                prior_order_count=member.order_count,
                lifetime_spend=(member.total_spend or 0) + order.total_price,
                tags=sorted(set(member.tag_list) | set(order.customer_tags or [])),
                email=member.email,
                phone=member.phone,
            )
        selection = self.select(order, customer)
        return {
            'order': order.to_dict(),
            'multi_fire': multi_fire_enabled(self.tenant),
            'customer': {
                'prior_order_count': customer.prior_order_count,
                'order_ordinal': customer.order_ordinal,
                'lifetime_spend': float(customer.lifetime_spend) if customer.lifetime_spend is not None else None,
            },
            **selection.to_dict(),
        }

    # ==================== Audit log ====================

    def _log(self, order: OrderFact, rule_id: Optional[int], member_id: Optional[int], result: str,
             reason: Optional[str], allocated: bool, details: Dict[str, Any]) -> Dict[str, Any]:
        entry = CampaignTriggerLog(
            tenant_id=self.tenant_id,
            campaign_rule_id=rule_id,
            member_id=member_id,
            order_id=order.order_id,
            order_number=order.order_number,
            order_value=order.total_price,
            customer_email=order.customer_email,
            customer_phone=order.customer_phone,
            trigger_result=result,
            reason=(reason or '')[:500] or None,
            reward_allocated=allocated,
            details=details,
        )
        db.session.add(entry)
        db.session.commit()
        return entry.to_dict()

    def trigger_logs(self, rule_id: int = None, order_id: str = None,
                     result: str = None, limit: int = 100) -> List[CampaignTriggerLog]:
        query = CampaignTriggerLog.query.filter_by(tenant_id=self.tenant_id)
        if rule_id:
            query = query.filter_by(campaign_rule_id=rule_id)
        if order_id:
            query = query.filter_by(order_id=str(order_id))
        if result:
            query = query.filter_by(trigger_result=result)
        limit = max(1, min(int(limit or 100), MAX_LOG_LIMIT))
        return query.order_by(CampaignTriggerLog.id.desc()).limit(limit).all()
