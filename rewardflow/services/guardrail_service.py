"""
Guardrail Tracker.

Caps are enforced with conditional UPDATEs (compare-and-increment) in the
caller's transaction, never by counting past allocations. The three checks
run in a fixed order:

1. global:       current_enrollments < max_enrollments / max_rewards_total
2. per customer: CampaignMemberCounter.allocation_count < max_rewards_per_customer
3. budget:       budget_spent + cost <= budget_cap

A rejection rolls the session back, so earlier increments never leak.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models.campaign import CampaignRule, CampaignMemberCounter, TriggerResult

logger = logging.getLogger(__name__)


@dataclass
class Reservation:
    ok: bool
    result: Optional[str] = None
    reason: Optional[str] = None


class GuardrailService:
    def ensure_counter(self, rule_id: int, member_id: int) -> None:
        """
        Make sure the per-customer counter row exists.

        Runs in its own short transaction (commits) so it must be called
        before the reservation transaction starts.
        """
        exists = db.session.query(CampaignMemberCounter.id).filter_by(
            campaign_rule_id=rule_id, member_id=member_id
        ).first()
        if exists:
            return
        db.session.add(CampaignMemberCounter(
            campaign_rule_id=rule_id, member_id=member_id, allocation_count=0
        ))
        try:
            db.session.commit()
        except IntegrityError:
            # Created concurrently
            db.session.rollback()

    def reserve(self, rule: CampaignRule, member_id: int, cost: Decimal = Decimal('0')) -> Reservation:
        """
        Atomically check and increment all three guardrails.

        Does not commit on success; the caller commits together with the
        allocation row. Rolls back on rejection.
        """
        cost = Decimal(str(cost or 0))
        rule_id = rule.id

        updated = CampaignRule.query.filter(
            CampaignRule.id == rule_id,
            or_(CampaignRule.max_enrollments.is_(None),
                CampaignRule.current_enrollments < CampaignRule.max_enrollments),
            or_(CampaignRule.max_rewards_total.is_(None),
                CampaignRule.current_enrollments < CampaignRule.max_rewards_total),
        ).update(
            {CampaignRule.current_enrollments: CampaignRule.current_enrollments + 1},
            synchronize_session=False
        )
        if not updated:
            return self._reject(rule_id, member_id, TriggerResult.MAX_REACHED,
                                'Campaign has reached its maximum number of rewards')

        counter_query = CampaignMemberCounter.query.filter(
            CampaignMemberCounter.campaign_rule_id == rule_id,
            CampaignMemberCounter.member_id == member_id,
        )
        if rule.max_rewards_per_customer is not None:
            counter_query = counter_query.filter(
                CampaignMemberCounter.allocation_count < rule.max_rewards_per_customer
            )
        updated = counter_query.update(
            {CampaignMemberCounter.allocation_count: CampaignMemberCounter.allocation_count + 1},
            synchronize_session=False
        )
        if not updated:
            return self._reject(rule_id, member_id, TriggerResult.ALREADY_ENROLLED,
                                'Customer has already received the maximum rewards for this campaign')

        updated = CampaignRule.query.filter(
            CampaignRule.id == rule_id,
            or_(CampaignRule.budget_cap.is_(None),
                CampaignRule.budget_spent + cost <= CampaignRule.budget_cap),
        ).update(
            {CampaignRule.budget_spent: CampaignRule.budget_spent + cost},
            synchronize_session=False
        )
        if not updated:
            return self._reject(rule_id, member_id, TriggerResult.BUDGET_EXCEEDED,
                                f'Reward cost {cost} would exceed the campaign budget')

        return Reservation(ok=True)

    def _reject(self, rule_id: int, member_id: int, result: TriggerResult, reason: str) -> Reservation:
        db.session.rollback()
        logger.info(f"Guardrail rejected rule {rule_id} for member {member_id}: {result.value}")
        return Reservation(ok=False, result=result.value, reason=reason)
