"""
Reward/Points Allocator.

Exactly one CampaignAllocation per (order_id, campaign_rule_id), enforced by
a unique constraint. A repeat attempt returns the original allocation and
never touches guardrail counters: either the fast-path lookup finds it, or
the insert fails and the rollback undoes this attempt's increments.

Timing:
- instant: reward issued in the allocation transaction
- delayed: guardrails reserved and a pending allocation created; the reward
  is issued by release_delayed() when the order is fulfilled, or right away
  if the fulfillment was already recorded
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..engine.facts import OrderFact
from ..models.member import Member
from ..models.campaign import (
    CampaignRule,
    CampaignAllocation,
    RewardVoucher,
    AllocationStatus,
    ClaimStatus,
    TriggerResult,
)
from ..models.membership import MembershipProgram, MemberMembership
from ..models.loyalty import PointsTransactionType
from ..utils.errors import ErrorCode
from ..utils.exceptions import RewardFlowError, NotFoundError
from .guardrail_service import GuardrailService
from .order_ledger import OrderLedger
from .points_service import PointsService, calculate_points

logger = logging.getLogger(__name__)


@dataclass
class AllocationResult:
    success: bool
    result: str
    reason: Optional[str] = None
    allocation: Optional[CampaignAllocation] = None
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'result': self.result,
            'reason': self.reason,
            'duplicate': self.duplicate,
            'allocation': self.allocation.to_dict() if self.allocation else None,
        }


class AllocationService:
    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id
        self.guardrails = GuardrailService()
        self.points = PointsService(tenant_id)

    def get_allocation(self, order_id: str, rule_id: int) -> Optional[CampaignAllocation]:
        return CampaignAllocation.query.filter_by(order_id=str(order_id), campaign_rule_id=rule_id).first()

    # ==================== Reward sizing ====================

    def points_for(self, rule: CampaignRule, member: Member, order_amount) -> int:
        action = rule.reward_action or {}
        if action.get('points') is not None:
            return int(action['points'])
        program = self.points.get_program(action.get('program_id'))
        if not program:
            return 0
        status = self.points.get_status(member.id, program.id)
        return calculate_points(
            order_amount,
            program.points_earn_rate,
            program.points_earn_divisor,
            self.points.multiplier_for(member, status),
        )

    def estimate_cost(self, rule: CampaignRule, member: Member, order_amount, points: int = 0) -> Decimal:
        """Budget charge for one reward."""
        action = rule.reward_action or {}
        if action.get('estimated_cost') is not None:
            return Decimal(str(action['estimated_cost']))
        reward_type = action.get('type')
        if reward_type == 'points':
            program = self.points.get_program(action.get('program_id'))
            if not program:
                return Decimal('0')
            tier = self.points.tier_for(member, self.points.get_status(member.id, program.id))
            return (Decimal(points) * self.points.points_value_for(program, tier)).quantize(Decimal('0.01'))
        if reward_type == 'voucher':
            value = Decimal(str(action.get('discount_value') or action.get('value') or 0))
            if action.get('discount_type') == 'percentage':
                return (Decimal(str(order_amount or 0)) * value / Decimal('100')).quantize(Decimal('0.01'))
            return value
        return Decimal(str(action.get('value') or 0))

    # ==================== Allocation ====================

    def allocate(self, rule: CampaignRule, order: OrderFact, member: Member) -> AllocationResult:
        """
        Allocate the rule's reward for this order, at most once.

        Raises:
            RewardFlowError: reward cannot be issued (e.g. missing membership program)
        """
        rule_id, member_id = rule.id, member.id
        existing = self.get_allocation(order.order_id, rule_id)
        if existing:
            return AllocationResult(True, TriggerResult.SUCCESS.value,
                                    'Already allocated for this order', existing, duplicate=True)

        action = rule.reward_action or {}
        reward_type = action.get('type')
        points = 0
        if reward_type == 'points':
            program = self.points.get_program(action.get('program_id'))
            if not program:
                raise RewardFlowError('Points reward configured but no active loyalty program',
                                      ErrorCode.NO_LOYALTY_PROGRAM.value)
            self.points.ensure_status(member, program)
            points = self.points_for(rule, member, order.total_price)
        cost = self.estimate_cost(rule, member, order.total_price, points)

        self.guardrails.ensure_counter(rule_id, member_id)
        reservation = self.guardrails.reserve(rule, member_id, cost)
        if not reservation.ok:
            return AllocationResult(False, reservation.result, reservation.reason)

        delayed = rule.allocation_timing == 'delayed'
        allocation = CampaignAllocation(
            tenant_id=self.tenant_id,
            campaign_rule_id=rule_id,
            member_id=member_id,
            order_id=order.order_id,
            status=AllocationStatus.PENDING.value if delayed else AllocationStatus.ALLOCATED.value,
            claim_status=ClaimStatus.UNCLAIMED.value if rule.claim_method == 'click' else ClaimStatus.CLAIMED.value,
            reward_type=reward_type,
            points_awarded=points if reward_type == 'points' else None,
            estimated_cost=cost,
            order_amount=order.total_price,
        )
        db.session.add(allocation)
        try:
            db.session.flush()
            if not delayed:
                self._issue(allocation, rule, member)
            db.session.commit()
        except IntegrityError:
            # Concurrent attempt for the same (order, rule) won
            db.session.rollback()
            existing = self.get_allocation(order.order_id, rule_id)
            if existing is None:
                raise
            return AllocationResult(True, TriggerResult.SUCCESS.value,
                                    'Already allocated for this order', existing, duplicate=True)
        except RewardFlowError:
            db.session.rollback()
            raise

        if delayed and self.order_fulfilled(order):
            # Fulfillment was seen before (or with) this order event
            allocation_id = allocation.id
            if self.release_delayed(order.order_id):
                allocation = db.session.get(CampaignAllocation, allocation_id)
                delayed = allocation.status == AllocationStatus.PENDING.value

        logger.info(
            f"Allocated {reward_type} for rule {rule_id} order {order.order_id} member {member_id} "
            f"({'pending fulfillment' if delayed else 'issued'})"
        )
        reason = 'Reward reserved until fulfillment' if delayed else 'Reward allocated'
        return AllocationResult(True, TriggerResult.SUCCESS.value, reason, allocation)

    def _issue(self, allocation: CampaignAllocation, rule: CampaignRule, member: Member) -> None:
        """Perform the reward side effect. Runs inside the caller's transaction."""
        action = rule.reward_action or {}
        reward_type = allocation.reward_type

        if reward_type == 'voucher':
            allocation.voucher = self._issue_voucher(rule, member, action)
        elif reward_type == 'points':
            result = self.points.credit_points(
                member, allocation.points_awarded or 0,
                transaction_type=PointsTransactionType.BONUS.value,
                idempotency_key=f'allocation:{allocation.id}',
                reference_id=allocation.order_id,
                description=f'Campaign reward: {rule.name}',
                program=self.points.get_program(action.get('program_id')),
                order_amount=allocation.order_amount,
                commit=False,
            )
            if not result.get('success'):
                raise RewardFlowError(f"Could not credit points: {result.get('error')}",
                                      ErrorCode.POINTS_CREDIT_FAILED.value)
        elif reward_type == 'membership':
            allocation.membership = self._enrol(rule, member, action, allocation.order_id)
        else:
            raise RewardFlowError(f"Unknown reward type '{reward_type}'", ErrorCode.INVALID_REWARD_TYPE.value)

        allocation.status = AllocationStatus.ALLOCATED.value
        allocation.allocated_at = datetime.utcnow()
        if allocation.claim_status == ClaimStatus.CLAIMED.value:
            allocation.claimed_at = allocation.allocated_at

    def _issue_voucher(self, rule: CampaignRule, member: Member, action: dict) -> RewardVoucher:
        generic = action.get('generic_code')
        if generic:
            code = str(generic).strip()
        else:
            prefix = action.get('code_prefix') or current_app.config.get('VOUCHER_CODE_PREFIX', 'RF')
            code = f"{prefix}-{secrets.token_hex(5).upper()}"
        expires_at = None
        if action.get('validity_days'):
            expires_at = datetime.utcnow() + timedelta(days=int(action['validity_days']))
        voucher = RewardVoucher(
            tenant_id=self.tenant_id,
            campaign_rule_id=rule.id,
            member_id=member.id,
            code=code,
            is_generic=bool(generic),
            discount_type=action.get('discount_type'),
            discount_value=action.get('discount_value') or action.get('value'),
            expires_at=expires_at,
        )
        db.session.add(voucher)
        return voucher

    def _enrol(self, rule: CampaignRule, member: Member, action: dict, order_id: str) -> MemberMembership:
        program = MembershipProgram.query.filter_by(
            id=action.get('program_id'), tenant_id=self.tenant_id
        ).first()
        if not program:
            raise NotFoundError('MembershipProgram', action.get('program_id'))
        validity_days = program.validity_days or current_app.config.get('DEFAULT_MEMBERSHIP_VALIDITY_DAYS', 365)
        now = datetime.utcnow()
        membership = MemberMembership(
            tenant_id=self.tenant_id,
            member_id=member.id,
            program_id=program.id,
            status='active',
            source='campaign',
            source_reference=order_id,
            starts_at=now,
            expires_at=now + timedelta(days=validity_days),
        )
        db.session.add(membership)
        return membership

    # ==================== Fulfillment / cancellation ====================

    def order_fulfilled(self, order: OrderFact) -> bool:
        if (order.fulfillment_status or '').lower() == 'fulfilled':
            return True
        return OrderLedger(self.tenant_id).is_fulfilled(order.order_id)

    def release_delayed(self, order_id: str) -> List[CampaignAllocation]:
        """Issue every pending allocation for a fulfilled order."""
        released = []
        pending_ids = [a.id for a in CampaignAllocation.query.filter_by(
            tenant_id=self.tenant_id, order_id=str(order_id), status=AllocationStatus.PENDING.value
        ).all()]

        for allocation_id in pending_ids:
            claimed = CampaignAllocation.query.filter(
                CampaignAllocation.id == allocation_id,
                CampaignAllocation.status == AllocationStatus.PENDING.value,
            ).update({CampaignAllocation.status: AllocationStatus.ALLOCATED.value},
                     synchronize_session=False)
            if not claimed:
                db.session.rollback()
                continue
            allocation = db.session.get(CampaignAllocation, allocation_id)
            try:
                self._issue(allocation, allocation.campaign_rule, allocation.member)
                db.session.commit()
            except RewardFlowError as e:
                db.session.rollback()
                logger.error(f"Could not release allocation {allocation_id} for order {order_id}: {e.message}")
                continue
            logger.info(f"Released delayed allocation {allocation_id} for order {order_id}")
            released.append(allocation)
        return released

    def cancel_pending(self, order_id: str) -> int:
        """Cancel pending allocations; guardrail counters are never decremented."""
        cancelled = CampaignAllocation.query.filter(
            CampaignAllocation.tenant_id == self.tenant_id,
            CampaignAllocation.order_id == str(order_id),
            CampaignAllocation.status == AllocationStatus.PENDING.value,
        ).update({
            CampaignAllocation.status: AllocationStatus.CANCELLED.value,
            CampaignAllocation.cancelled_at: datetime.utcnow(),
        }, synchronize_session=False)
        db.session.commit()
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending allocations for order {order_id}")
        return cancelled

    def claim(self, allocation_id: int) -> Dict[str, Any]:
        """Claim a click-to-claim allocation."""
        allocation = CampaignAllocation.query.filter_by(id=allocation_id, tenant_id=self.tenant_id).first()
        if not allocation:
            return {'success': False, 'error': 'allocation_not_found'}
        if allocation.status == AllocationStatus.CANCELLED.value:
            return {'success': False, 'error': 'allocation_cancelled'}

        claimed = CampaignAllocation.query.filter(
            CampaignAllocation.id == allocation_id,
            CampaignAllocation.claim_status == ClaimStatus.UNCLAIMED.value,
        ).update({
            CampaignAllocation.claim_status: ClaimStatus.CLAIMED.value,
            CampaignAllocation.claimed_at: datetime.utcnow(),
        }, synchronize_session=False)
        db.session.commit()
        db.session.refresh(allocation)
        return {'success': True, 'already_claimed': not claimed, 'allocation': allocation.to_dict()}
