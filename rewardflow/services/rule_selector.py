"""
Rule Selector.

Orders a tenant's campaign rules by priority, evaluates them against an order
and decides which matches go on to allocation.

Selection modes (see CAMPAIGN_MULTI_FIRE):
- first-match-wins (default): per trigger_category only the top match is
  allocated; lower matches are logged as 'success' with reward_allocated False
- multi-fire: every match is allocated in priority order
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from ..engine.conditions import (
    GROUP_NAMES,
    check_exclusions,
    evaluate_group,
    validate_rule_config,
)
from ..engine.facts import OrderFact, CustomerFact
from ..models.campaign import TriggerResult

logger = logging.getLogger(__name__)


@dataclass
class RuleEvaluation:
    """What happened to one rule for one order."""
    rule: Any
    matched: bool = False
    allocate: bool = False
    result: Optional[str] = None   # final TriggerResult for rules that do not go to allocation
    reason: Optional[str] = None
    matched_conditions: List[str] = field(default_factory=list)
    failed_conditions: List[str] = field(default_factory=list)

    def details(self) -> Dict[str, Any]:
        return {
            'rule_name': getattr(self.rule, 'name', None),
            'priority': getattr(self.rule, 'priority', None),
            'matched_conditions': self.matched_conditions,
            'failed_conditions': self.failed_conditions,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.details()
        data.update({
            'rule_id': getattr(self.rule, 'id', None),
            'matched': self.matched,
            'allocate': self.allocate,
            'result': self.result,
            'reason': self.reason,
        })
        return data


@dataclass
class Selection:
    evaluations: List[RuleEvaluation] = field(default_factory=list)

    @property
    def matches(self) -> List[RuleEvaluation]:
        return [e for e in self.evaluations if e.matched]

    @property
    def to_allocate(self) -> List[Any]:
        return [e.rule for e in self.evaluations if e.allocate]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'evaluations': [e.to_dict() for e in self.evaluations],
            'allocate_rule_ids': [r.id for r in self.to_allocate],
        }


def sort_key(rule):
    """priority desc, then created_at asc, then id asc."""
    created = rule.created_at or datetime.min
    return (-(rule.priority or 0), created, rule.id or 0)


def eligible_rules(rules: Iterable[Any], on: date = None) -> List[Any]:
    """Active rules inside their inclusive date window, in evaluation order."""
    on = on or datetime.utcnow().date()
    return sorted((r for r in rules if r.is_active and r.is_in_window(on)), key=sort_key)


class RuleSelector:
    def __init__(self, multi_fire: bool = False):
        self.multi_fire = multi_fire

    def evaluate_rule(
        self,
        rule,
        order: OrderFact,
        customer: CustomerFact,
        granted_scopes: Optional[Set[str]] = None
    ) -> RuleEvaluation:
        evaluation = RuleEvaluation(rule=rule)

        report = validate_rule_config(rule, granted_scopes)
        if not report.valid:
            problems = [f"{e['field']}: {e['message']}" for e in report.errors]
            if report.missing_scopes:
                problems.append(f"missing scopes: {', '.join(sorted(report.missing_scopes))}")
            evaluation.result = TriggerResult.FAILED.value
            evaluation.reason = 'Rule is invalid for evaluation: ' + '; '.join(problems)
            logger.warning(f"Campaign rule {rule.id} invalid for evaluation: {problems}")
            return evaluation

        excluded = check_exclusions(rule.exclusion_rules, order)
        if excluded:
            evaluation.result = TriggerResult.EXCLUDED.value
            evaluation.reason = excluded
            return evaluation

        below_threshold = False
        for group in GROUP_NAMES:
            group_result = evaluate_group(getattr(rule, group) or [], order, customer)
            evaluation.matched_conditions.extend(group_result.matched)
            evaluation.failed_conditions.extend(group_result.failed)
            below_threshold = below_threshold or group_result.below_threshold

        if evaluation.failed_conditions:
            if below_threshold:
                evaluation.result = TriggerResult.BELOW_THRESHOLD.value
                evaluation.reason = f"Order value {order.total_price} does not meet rule thresholds"
            else:
                evaluation.result = TriggerResult.NOT_MATCHED.value
                evaluation.reason = 'Conditions not met: ' + '; '.join(evaluation.failed_conditions)
            return evaluation

        evaluation.matched = True
        return evaluation

    def select(
        self,
        rules: Iterable[Any],
        order: OrderFact,
        customer: CustomerFact,
        granted_scopes: Optional[Set[str]] = None,
        on: date = None
    ) -> Selection:
        selection = Selection()
        winners: Dict[str, Any] = {}

        for rule in eligible_rules(rules, on):
            evaluation = self.evaluate_rule(rule, order, customer, granted_scopes)
            selection.evaluations.append(evaluation)
            if not evaluation.matched:
                continue

            category = rule.trigger_category or 'order'
            if self.multi_fire or category not in winners:
                winners.setdefault(category, rule)
                evaluation.allocate = True
            else:
                top = winners[category]
                evaluation.result = TriggerResult.SUCCESS.value
                evaluation.reason = (
                    f"Matched, but rule {top.id} ({top.name}) has higher priority "
                    f"in category '{category}'"
                )

        logger.debug(
            f"Order {order.order_id}: {len(selection.matches)} of {len(selection.evaluations)} "
            f"rules matched, allocating {[r.id for r in selection.to_allocate]}"
        )
        return selection
