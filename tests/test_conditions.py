"""
Tests for the campaign condition evaluator.

Pure evaluation: no database, OrderFact/CustomerFact built directly.
"""
from decimal import Decimal

import pytest

from rewardflow.engine.conditions import (
    parse_condition,
    evaluate,
    evaluate_group,
    check_exclusions,
    required_scopes,
    validate_rule_config,
)
from rewardflow.engine.facts import OrderFact, CustomerFact
from rewardflow.utils.exceptions import ConditionConfigError


def make_order(**kwargs):
    values = {'order_id': '1001', 'total_price': Decimal('150.00')}
    values.update(kwargs)
    return OrderFact(**values)


NEW_CUSTOMER = CustomerFact(prior_order_count=0, lifetime_spend=Decimal('150.00'), tags=[])
RETURNING_CUSTOMER = CustomerFact(prior_order_count=4, lifetime_spend=Decimal('900.00'), tags=['vip'])


class TestNumericConditions:
    """order_value and friends."""

    @pytest.mark.parametrize('amount,expected', [
        ('99', False),
        ('100', True),
        ('500', True),
        ('501', False),
    ])
    def test_between_is_inclusive(self, amount, expected):
        node = {'type': 'order_value', 'operator': 'between', 'value': [100, 500]}
        assert evaluate([node], make_order(total_price=Decimal(amount)), NEW_CUSTOMER) is expected

    def test_between_accepts_comma_string(self):
        node = {'type': 'order_value', 'operator': 'between', 'value': '100,200'}
        assert evaluate([node], make_order(total_price=Decimal('200')), NEW_CUSTOMER) is True

    def test_gte_lte_eq(self):
        order = make_order(total_price=Decimal('250'))
        assert evaluate([{'type': 'order_value', 'operator': 'gte', 'value': 200}], order, NEW_CUSTOMER)
        assert not evaluate([{'type': 'order_value', 'operator': 'lte', 'value': 200}], order, NEW_CUSTOMER)
        assert evaluate([{'type': 'order_value', 'operator': 'eq', 'value': '250.00'}], order, NEW_CUSTOMER)

    def test_legacy_gte_type_ignores_operator(self):
        order = make_order(total_price=Decimal('250'))
        assert evaluate([{'type': 'order_value_gte', 'value': 200}], order, NEW_CUSTOMER)
        assert evaluate([{'type': 'order_value_gte', 'operator': 'lte', 'value': 200}], order, NEW_CUSTOMER)

    def test_legacy_between_type(self):
        node = {'type': 'order_value_between', 'value': [100, 300]}
        assert evaluate([node], make_order(total_price=Decimal('300')), NEW_CUSTOMER)
        assert not evaluate([node], make_order(total_price=Decimal('301')), NEW_CUSTOMER)

    def test_item_count(self):
        order = make_order(line_items=[{'sku': 'A'}, {'sku': 'B'}, {'sku': 'C'}])
        assert evaluate([{'type': 'order_item_count', 'operator': 'gte', 'value': 3}], order, NEW_CUSTOMER)
        assert not evaluate([{'type': 'order_item_count', 'operator': 'gte', 'value': 4}], order, NEW_CUSTOMER)

    def test_order_number_is_one_based(self):
        node = {'type': 'order_number', 'operator': 'eq', 'value': 1}
        assert evaluate([node], make_order(), NEW_CUSTOMER)
        assert not evaluate([node], make_order(), RETURNING_CUSTOMER)

    def test_lifetime_orders_includes_current_order(self):
        node = {'type': 'lifetime_orders', 'operator': 'eq', 'value': 5}
        assert evaluate([node], make_order(), RETURNING_CUSTOMER)

    def test_lifetime_spend(self):
        node = {'type': 'lifetime_spend', 'operator': 'gte', 'value': 500}
        assert evaluate([node], make_order(), RETURNING_CUSTOMER)
        assert not evaluate([node], make_order(), NEW_CUSTOMER)

    def test_missing_customer_history_is_false(self):
        node = {'type': 'lifetime_orders', 'operator': 'gte', 'value': 1}
        assert not evaluate([node], make_order(), CustomerFact())


class TestListConditions:

    def test_specific_product_by_id_or_sku(self):
        order = make_order(line_items=[{'product_id': 111, 'sku': 'SKU-RED'}])
        assert evaluate([{'type': 'specific_product', 'operator': 'contains', 'value': '111'}], order, NEW_CUSTOMER)
        assert evaluate([{'type': 'specific_product', 'operator': 'in_list', 'value': 'X,SKU-RED'}], order, NEW_CUSTOMER)
        assert evaluate([{'type': 'specific_product', 'operator': 'not_in', 'value': ['X', 'Y']}], order, NEW_CUSTOMER)
        # SKUs compare case-sensitively
        assert not evaluate([{'type': 'specific_product', 'operator': 'contains', 'value': 'sku-red'}], order, NEW_CUSTOMER)

    def test_coupon_code_operators(self):
        order = make_order(discount_codes=['SUMMER20'])
        assert evaluate([{'type': 'coupon_code', 'operator': 'exact', 'value': 'SUMMER20'}], order, NEW_CUSTOMER)
        assert evaluate([{'type': 'coupon_code', 'operator': 'starts_with', 'value': 'SUM'}], order, NEW_CUSTOMER)
        assert not evaluate([{'type': 'coupon_code', 'operator': 'exact', 'value': 'summer20'}], order, NEW_CUSTOMER)

    def test_coupon_code_missing_data(self):
        node = {'type': 'coupon_code', 'operator': 'not_contains', 'value': 'STAFF'}
        assert not evaluate([node], make_order(discount_codes=None), NEW_CUSTOMER)
        assert evaluate([node], make_order(discount_codes=[]), NEW_CUSTOMER)

    def test_payment_method_cod_and_prepaid(self):
        cod = make_order(gateway='Cash on Delivery (COD)')
        prepaid = make_order(gateway='shopify_payments', payment_gateway_names=['shopify_payments'])
        node = {'type': 'payment_method', 'operator': 'exact', 'value': 'COD'}
        assert evaluate([node], cod, NEW_CUSTOMER)
        assert not evaluate([node], prepaid, NEW_CUSTOMER)
        assert evaluate([{'type': 'payment_method', 'operator': 'in', 'value': ['prepaid']}], prepaid, NEW_CUSTOMER)
        assert not evaluate([node], make_order(), NEW_CUSTOMER)

    def test_customer_type(self):
        new = {'type': 'customer_type', 'operator': 'eq', 'value': 'new'}
        returning = {'type': 'customer_type', 'operator': 'exact', 'value': 'returning'}
        assert evaluate([new], make_order(), NEW_CUSTOMER)
        assert not evaluate([new], make_order(), RETURNING_CUSTOMER)
        assert evaluate([returning], make_order(), RETURNING_CUSTOMER)

    def test_customer_tags(self):
        assert evaluate([{'type': 'customer_tags', 'operator': 'has', 'value': 'vip'}], make_order(), RETURNING_CUSTOMER)
        assert evaluate([{'type': 'customer_tags', 'operator': 'not_has', 'value': 'vip'}], make_order(), NEW_CUSTOMER)
        assert not evaluate([{'type': 'customer_tags', 'operator': 'has', 'value': 'VIP'}], make_order(), RETURNING_CUSTOMER)


class TestLocationAndAttribution:

    ADDRESS = {'city': 'Austin', 'province': 'Texas', 'province_code': 'TX',
               'country': 'United States', 'country_code': 'US', 'zip': '78701'}

    def test_shipping_city_case_insensitive(self):
        order = make_order(shipping_address=self.ADDRESS)
        assert evaluate([{'type': 'shipping_city', 'operator': 'exact', 'value': 'austin'}], order, NEW_CUSTOMER)
        assert evaluate([{'type': 'shipping_state', 'operator': 'in_list', 'value': 'CA,tx'}], order, NEW_CUSTOMER)
        assert evaluate([{'type': 'shipping_country', 'operator': 'not_in', 'value': ['IN']}], order, NEW_CUSTOMER)

    def test_pincode_prefix(self):
        order = make_order(shipping_address=self.ADDRESS)
        assert evaluate([{'type': 'shipping_pincode', 'operator': 'starts_with', 'value': '787'}], order, NEW_CUSTOMER)
        assert evaluate([{'type': 'shipping_zip', 'operator': 'in', 'value': '78701,10001'}], order, NEW_CUSTOMER)

    def test_missing_address_is_false(self):
        node = {'type': 'shipping_city', 'operator': 'not_in', 'value': 'Austin'}
        assert not evaluate([node], make_order(shipping_address=None), NEW_CUSTOMER)

    def test_utm_from_note_attributes(self):
        order = OrderFact.from_payload({
            'id': 1, 'total_price': '10.00',
            'note_attributes': [{'name': 'utm_source', 'value': 'Instagram'}],
        })
        assert evaluate([{'type': 'utm_source', 'operator': 'exact', 'value': 'instagram'}], order, NEW_CUSTOMER)
        assert evaluate([{'type': 'utm_source', 'operator': 'contains', 'value': 'GRAM'}], order, NEW_CUSTOMER)
        assert not evaluate([{'type': 'utm_campaign', 'operator': 'exact', 'value': 'spring'}], order, NEW_CUSTOMER)


class TestGroupEvaluation:

    def test_empty_group_passes(self):
        assert evaluate([], make_order(), NEW_CUSTOMER)
        assert evaluate(None, make_order(), NEW_CUSTOMER)

    def test_group_is_and_combined(self):
        nodes = [
            {'type': 'order_value', 'operator': 'gte', 'value': 100},
            {'type': 'customer_type', 'operator': 'eq', 'value': 'returning'},
        ]
        result = evaluate_group(nodes, make_order(), NEW_CUSTOMER)
        assert result.passed is False
        assert len(result.matched) == 1
        assert result.failed == ['customer_type eq returning']

    def test_failed_threshold_is_flagged(self):
        result = evaluate_group([{'type': 'order_value', 'operator': 'gte', 'value': 500}], make_order(), NEW_CUSTOMER)
        assert result.below_threshold is True

    @pytest.mark.parametrize('node', [
        {'type': 'made_up', 'operator': 'eq', 'value': 1},
        {'type': 'order_value', 'operator': 'contains', 'value': 1},
        {'type': 'order_value', 'operator': 'between', 'value': [100]},
        {'type': 'order_value', 'operator': 'gte', 'value': 'lots'},
        {'type': 'customer_type', 'operator': 'eq', 'value': 'vip'},
        'not-a-dict',
    ])
    def test_malformed_nodes_never_match(self, node):
        result = evaluate_group([node], make_order(), NEW_CUSTOMER)
        assert result.passed is False
        assert result.failed[0].startswith('invalid:')

    def test_parse_condition_raises_for_unknown_type(self):
        with pytest.raises(ConditionConfigError):
            parse_condition({'type': 'made_up', 'operator': 'eq', 'value': 1})

    def test_missing_operator_rejected_for_modern_types(self):
        with pytest.raises(ConditionConfigError):
            parse_condition({'type': 'order_value', 'value': 100})


class TestExclusions:

    def test_flags(self):
        rules = {'exclude_refunded': True, 'exclude_cancelled': True, 'exclude_test_orders': True}
        assert check_exclusions(rules, make_order(financial_status='refunded')) == 'Order is refunded'
        assert check_exclusions(rules, make_order(cancelled=True)) == 'Order is cancelled'
        assert check_exclusions(rules, make_order(test=True)) == 'Test order'
        assert check_exclusions(rules, make_order()) is None

    def test_flags_off(self):
        assert check_exclusions({}, make_order(test=True, cancelled=True)) is None


class TestRuleValidation:

    def test_required_scopes(self):
        nodes = [
            {'type': 'order_value', 'operator': 'gte', 'value': 1},
            {'type': 'shipping_city', 'operator': 'exact', 'value': 'Austin'},
        ]
        assert required_scopes(nodes) == {'read_orders', 'read_customer_address'}

    def test_node_can_demand_stricter_scope(self):
        condition = parse_condition({'type': 'order_value', 'operator': 'gte', 'value': 1,
                                     'required_scope': 'read_all_orders'})
        assert condition.required_scopes == {'read_orders', 'read_all_orders'}

    def test_missing_scope_reported(self):
        report = validate_rule_config({
            'trigger_conditions': [{'type': 'customer_type', 'operator': 'eq', 'value': 'new'}],
            'reward_action': {'type': 'voucher'},
        }, granted_scopes={'read_orders'})
        assert report.valid is False
        assert report.missing_scopes == {'read_customers'}

    def test_bad_reward_action(self):
        report = validate_rule_config({
            'reward_action': {'type': 'cash', 'allocation_timing': 'later'},
            'max_rewards_per_customer': -1,
        })
        fields = {e['field'] for e in report.errors}
        assert {'reward_action.type', 'reward_action.allocation_timing', 'max_rewards_per_customer'} <= fields

    def test_valid_rule(self):
        report = validate_rule_config({
            'trigger_conditions': [{'type': 'order_value', 'operator': 'between', 'value': [100, 500]}],
            'exclusion_rules': {'exclude_test_orders': True},
            'reward_action': {'type': 'points', 'points': 200},
        }, granted_scopes={'read_orders'})
        assert report.valid is True
        assert report.to_dict() == {'valid': True, 'errors': [], 'missing_scopes': []}


class TestOrderFact:

    def test_from_shopify_payload(self):
        order = OrderFact.from_payload({
            'id': 5001,
            'name': '#5001',
            'total_price': '99.50',
            'email': ' Bob@Example.com ',
            'customer': {'id': 9, 'phone': '+1 (415) 555-0101', 'orders_count': 3,
                         'total_spent': '300.00', 'tags': 'vip, wholesale'},
            'discount_codes': [{'code': 'WELCOME'}],
            'note_attributes': [{'name': 'ref', 'value': 'alice123'}],
        })
        assert order.order_id == '5001'
        assert order.total_price == Decimal('99.50')
        assert order.customer_email == 'bob@example.com'
        assert order.customer_phone == '+14155550101'
        assert order.customer_tags == ['vip', 'wholesale']
        assert order.discount_codes == ['WELCOME']
        assert order.lifetime_order_count == 3
        assert order.is_first_order is False
        assert order.referral_code == 'ALICE123'

    def test_customer_fact_from_order(self):
        order = OrderFact.from_payload({'id': 1, 'total_price': '10', 'lifetime_order_count': 1})
        customer = CustomerFact.from_order(order)
        assert customer.prior_order_count == 0
        assert customer.order_ordinal == 1
