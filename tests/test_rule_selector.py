"""
Tests for rule ordering and first-match-wins / multi-fire selection.

Rules are transient CampaignRule objects; nothing touches the database.
"""
from datetime import date, datetime, timedelta
from decimal import Decimal

from rewardflow.engine.facts import OrderFact, CustomerFact
from rewardflow.models.campaign import CampaignRule
from rewardflow.services.rule_selector import RuleSelector, eligible_rules

ALL_SCOPES = {'read_orders', 'read_customers', 'read_customer_address'}
BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)
TODAY = date(2026, 3, 1)


def make_rule(rule_id, priority=0, created_offset=0, **kwargs):
    values = dict(
        id=rule_id,
        tenant_id=1,
        name=f'Rule {rule_id}',
        trigger_category='order',
        priority=priority,
        is_active=True,
        created_at=BASE_TIME + timedelta(seconds=created_offset),
        reward_action={'type': 'voucher', 'discount_type': 'fixed_amount', 'discount_value': 5},
    )
    values.update(kwargs)
    return CampaignRule(**values)


def make_order(total='250.00', **kwargs):
    return OrderFact(order_id='7001', total_price=Decimal(total), **kwargs)


NEW_CUSTOMER = CustomerFact(prior_order_count=0, lifetime_spend=Decimal('250'), tags=[])


class TestEligibleRules:

    def test_sorted_by_priority_then_created_then_id(self):
        rules = [
            make_rule(3, priority=5, created_offset=10),
            make_rule(1, priority=1),
            make_rule(4, priority=5, created_offset=10),
            make_rule(2, priority=5, created_offset=0),
        ]
        assert [r.id for r in eligible_rules(rules, TODAY)] == [2, 3, 4, 1]

    def test_inactive_and_out_of_window_skipped(self):
        rules = [
            make_rule(1, is_active=False),
            make_rule(2, start_date=date(2026, 3, 2)),
            make_rule(3, end_date=date(2026, 2, 28)),
            make_rule(4, start_date=TODAY, end_date=TODAY),
        ]
        assert [r.id for r in eligible_rules(rules, TODAY)] == [4]


class TestSelection:

    def test_first_match_wins_per_category(self):
        high = make_rule(1, priority=10)
        low = make_rule(2, priority=1)
        selection = RuleSelector().select([low, high], make_order(), NEW_CUSTOMER, ALL_SCOPES, on=TODAY)

        assert selection.to_allocate == [high]
        assert len(selection.matches) == 2
        runner_up = selection.evaluations[1]
        assert runner_up.rule is low
        assert runner_up.allocate is False
        assert runner_up.result == 'success'
        assert 'higher priority' in runner_up.reason

    def test_categories_are_independent(self):
        order_rule = make_rule(1, priority=10)
        other = make_rule(2, priority=1, trigger_category='first_purchase')
        selection = RuleSelector().select([order_rule, other], make_order(), NEW_CUSTOMER, ALL_SCOPES, on=TODAY)
        assert selection.to_allocate == [order_rule, other]

    def test_multi_fire_allocates_every_match(self):
        rules = [make_rule(1, priority=10), make_rule(2, priority=5), make_rule(3, priority=1)]
        selection = RuleSelector(multi_fire=True).select(rules, make_order(), NEW_CUSTOMER, ALL_SCOPES, on=TODAY)
        assert [r.id for r in selection.to_allocate] == [1, 2, 3]

    def test_higher_priority_mismatch_lets_lower_rule_win(self):
        strict = make_rule(1, priority=10, trigger_conditions=[
            {'type': 'order_value', 'operator': 'gte', 'value': 1000},
        ])
        loose = make_rule(2, priority=1)
        selection = RuleSelector().select([strict, loose], make_order(), NEW_CUSTOMER, ALL_SCOPES, on=TODAY)

        assert selection.to_allocate == [loose]
        assert selection.evaluations[0].result == 'below_threshold'

    def test_not_matched_vs_below_threshold(self):
        rule = make_rule(1, eligibility_conditions=[
            {'type': 'customer_type', 'operator': 'eq', 'value': 'returning'},
        ])
        selection = RuleSelector().select([rule], make_order(), NEW_CUSTOMER, ALL_SCOPES, on=TODAY)
        evaluation = selection.evaluations[0]
        assert evaluation.result == 'not_matched'
        assert evaluation.failed_conditions == ['customer_type eq returning']

    def test_excluded_order(self):
        rule = make_rule(1, exclusion_rules={'exclude_test_orders': True})
        selection = RuleSelector().select([rule], make_order(test=True), NEW_CUSTOMER, ALL_SCOPES, on=TODAY)
        assert selection.to_allocate == []
        assert selection.evaluations[0].result == 'excluded'
        assert selection.evaluations[0].reason == 'Test order'

    def test_missing_scope_fails_rule(self):
        rule = make_rule(1, location_conditions=[
            {'type': 'shipping_city', 'operator': 'exact', 'value': 'Austin'},
        ])
        order = make_order(shipping_address={'city': 'Austin'})
        selection = RuleSelector().select([rule], order, NEW_CUSTOMER, {'read_orders'}, on=TODAY)
        evaluation = selection.evaluations[0]
        assert evaluation.result == 'failed'
        assert 'read_customer_address' in evaluation.reason

    def test_malformed_rule_never_allocates(self):
        broken = make_rule(1, priority=10, trigger_conditions=[{'type': 'bogus', 'operator': 'eq', 'value': 1}])
        fallback = make_rule(2, priority=1)
        selection = RuleSelector().select([broken, fallback], make_order(), NEW_CUSTOMER, ALL_SCOPES, on=TODAY)
        assert selection.evaluations[0].result == 'failed'
        assert selection.to_allocate == [fallback]

    def test_to_dict(self):
        selection = RuleSelector().select([make_rule(1)], make_order(), NEW_CUSTOMER, ALL_SCOPES, on=TODAY)
        data = selection.to_dict()
        assert data['allocate_rule_ids'] == [1]
        assert data['evaluations'][0]['matched'] is True
