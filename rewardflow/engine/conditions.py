"""
Campaign condition evaluator.

Condition nodes are stored as JSON ({type, operator, value, required_scope?})
and parsed into a closed set of typed condition classes. Parsing validates
the operator and value up front, so the same code path serves save-time
validation and evaluation.

Evaluation never raises: missing order data evaluates False, and a node that
cannot be parsed evaluates False with a logged diagnostic.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Set

from .facts import OrderFact, CustomerFact
from ..utils.exceptions import ConditionConfigError

logger = logging.getLogger(__name__)

SCOPE_ORDERS = 'read_orders'
SCOPE_CUSTOMERS = 'read_customers'
SCOPE_ADDRESS = 'read_customer_address'

CONDITION_REGISTRY: Dict[str, type] = {}


def register(*type_names):
    def decorator(cls):
        for name in type_names:
            CONDITION_REGISTRY[name] = cls
        return cls
    return decorator


def _as_list(value: Any) -> List[str]:
    """Arrays or comma-separated strings."""
    if isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value]
    elif isinstance(value, str):
        items = [v.strip() for v in value.split(',')]
    elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        items = [str(value)]
    else:
        items = []
    return [v for v in items if v]


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None or value == '':
        raise ValueError(f'not a number: {value!r}')
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f'not a number: {value!r}')
    if not result.is_finite():
        raise ValueError(f'not a number: {value!r}')
    return result


class Condition:
    """Base condition. Subclasses set operators, default_scope and implement test()."""

    operators: tuple = ()
    default_scope = SCOPE_ORDERS
    # Failing value thresholds are logged as below_threshold rather than not_matched
    is_threshold = False

    def __init__(self, type_name: str, operator: str, value: Any, required_scope: str = None):
        self.type = type_name
        self.operator = operator
        self.raw_value = value
        self.required_scopes: Set[str] = {self.default_scope}
        if required_scope:
            self.required_scopes.add(required_scope)
        if operator not in self.operators:
            raise ConditionConfigError(
                f"Operator '{operator}' is not supported for '{type_name}' "
                f"(allowed: {', '.join(self.operators)})"
            )
        try:
            self.value = self.parse_value(value)
        except ValueError as e:
            raise ConditionConfigError(f"Invalid value for '{type_name}': {e}")

    def parse_value(self, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError('value is required')
        return value

    def test(self, order: OrderFact, customer: CustomerFact) -> bool:
        raise NotImplementedError

    def evaluate(self, order: OrderFact, customer: CustomerFact) -> bool:
        try:
            return bool(self.test(order, customer))
        except (TypeError, ValueError, AttributeError, InvalidOperation) as e:
            logger.warning(f"Condition {self.describe()} could not be evaluated: {e}")
            return False

    def describe(self) -> str:
        return f"{self.type} {self.operator} {self.raw_value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'operator': self.operator,
            'value': self.raw_value,
            'required_scopes': sorted(self.required_scopes)
        }


# ==================== Numeric ====================

class NumericCondition(Condition):
    operators = ('gte', 'lte', 'eq', 'between')

    def parse_value(self, value):
        if self.operator == 'between':
            bounds = value if isinstance(value, (list, tuple)) else _as_list(value)
            if len(bounds) != 2:
                raise ValueError('between needs exactly two bounds')
            low, high = _as_decimal(bounds[0]), _as_decimal(bounds[1])
            if low > high:
                raise ValueError('lower bound is greater than upper bound')
            return low, high
        if isinstance(value, (list, tuple)):
            raise ValueError('expected a single number')
        return _as_decimal(value)

    def extract(self, order: OrderFact, customer: CustomerFact):
        raise NotImplementedError

    def test(self, order, customer):
        actual = self.extract(order, customer)
        if actual is None:
            return False
        actual = Decimal(str(actual))
        if self.operator == 'between':
            low, high = self.value
            return low <= actual <= high
        if self.operator == 'gte':
            return actual >= self.value
        if self.operator == 'lte':
            return actual <= self.value
        return actual == self.value


@register('order_value')
class OrderValueCondition(NumericCondition):
    is_threshold = True

    def extract(self, order, customer):
        return order.total_price


class LegacyOrderValueCondition(OrderValueCondition):
    """Older rules stored the operator in the type name; any stored operator is ignored."""
    fixed_operator = None

    def __init__(self, type_name, operator, value, required_scope=None):
        super().__init__(type_name, self.fixed_operator, value, required_scope)


@register('order_value_gte')
class LegacyOrderValueGteCondition(LegacyOrderValueCondition):
    fixed_operator = 'gte'


@register('order_value_between')
class LegacyOrderValueBetweenCondition(LegacyOrderValueCondition):
    fixed_operator = 'between'


@register('order_item_count')
class ItemCountCondition(NumericCondition):
    def extract(self, order, customer):
        return order.item_count


@register('order_number')
class OrderNumberCondition(NumericCondition):
    """Compares the 1-based ordinal of this order in the customer's history."""
    operators = ('eq', 'gte', 'lte', 'between')
    default_scope = SCOPE_CUSTOMERS

    def extract(self, order, customer):
        return customer.order_ordinal if customer else None


@register('lifetime_orders')
class LifetimeOrdersCondition(NumericCondition):
    default_scope = SCOPE_CUSTOMERS

    def extract(self, order, customer):
        return customer.lifetime_order_count if customer else None


@register('lifetime_spend')
class LifetimeSpendCondition(NumericCondition):
    default_scope = SCOPE_CUSTOMERS

    def extract(self, order, customer):
        return customer.lifetime_spend if customer else None


# ==================== Sets and strings ====================

class ListCondition(Condition):
    """Operators whose value is a single string or a list, chosen per operator."""
    list_operators = ('in_list', 'in', 'not_in')
    case_sensitive = True

    def parse_value(self, value):
        if self.operator in self.list_operators:
            items = _as_list(value)
            if not items:
                raise ValueError('list is empty')
            return [self.fold(v) for v in items]
        if isinstance(value, (list, tuple)) or value is None:
            raise ValueError('expected a single value')
        value = str(value).strip()
        if not value:
            raise ValueError('value is required')
        return self.fold(value)

    def fold(self, value: str) -> str:
        return value if self.case_sensitive else value.lower()


@register('specific_product')
class SpecificProductCondition(ListCondition):
    """Matches line item product ids or SKUs."""
    operators = ('contains', 'not_contains', 'in_list', 'in', 'not_in')

    def test(self, order, customer):
        keys = set(order.product_keys)
        if self.operator == 'contains':
            return self.value in keys
        if self.operator == 'not_contains':
            return self.value not in keys
        if self.operator == 'not_in':
            return not keys.intersection(self.value)
        return bool(keys.intersection(self.value))


@register('coupon_code')
class CouponCodeCondition(ListCondition):
    operators = ('exact', 'starts_with', 'contains', 'not_contains')

    def test(self, order, customer):
        codes = order.discount_codes
        if codes is None:
            return False
        if self.operator == 'exact':
            return any(c == self.value for c in codes)
        if self.operator == 'starts_with':
            return any(c.startswith(self.value) for c in codes)
        if self.operator == 'contains':
            return any(self.value in c for c in codes)
        return not any(self.value in c for c in codes)


@register('payment_method')
class PaymentMethodCondition(ListCondition):
    """'cod', 'prepaid' or a gateway name."""
    operators = ('exact', 'in_list', 'in', 'not_in')
    case_sensitive = False

    def test(self, order, customer):
        labels = set(order.payment_labels)
        if not labels:
            return False
        if self.operator == 'exact':
            return self.value in labels
        if self.operator == 'not_in':
            return not labels.intersection(self.value)
        return bool(labels.intersection(self.value))


@register('customer_type')
class CustomerTypeCondition(Condition):
    """new = no orders before this one; returning = at least one."""
    operators = ('eq', 'exact')
    default_scope = SCOPE_CUSTOMERS

    def parse_value(self, value):
        value = str(value or '').strip().lower()
        if value not in ('new', 'returning'):
            raise ValueError("expected 'new' or 'returning'")
        return value

    def test(self, order, customer):
        if customer is None or customer.prior_order_count is None:
            return False
        if self.value == 'new':
            return customer.prior_order_count == 0
        return customer.prior_order_count >= 1


@register('customer_tags')
class CustomerTagsCondition(ListCondition):
    operators = ('has', 'not_has', 'in_list', 'in', 'not_in')
    default_scope = SCOPE_CUSTOMERS

    def test(self, order, customer):
        tags = customer.tags if customer else None
        if tags is None:
            tags = order.customer_tags
        if tags is None:
            return False
        tags = set(tags)
        if self.operator == 'has':
            return self.value in tags
        if self.operator == 'not_has':
            return self.value not in tags
        if self.operator == 'not_in':
            return not tags.intersection(self.value)
        return bool(tags.intersection(self.value))


class ShippingCondition(ListCondition):
    operators = ('exact', 'in_list', 'in', 'not_in')
    default_scope = SCOPE_ADDRESS
    case_sensitive = False
    address_fields: tuple = ()

    def actual_values(self, order: OrderFact) -> List[str]:
        return [self.fold(v) for v in (order.shipping(f) for f in self.address_fields) if v]

    def test(self, order, customer):
        actual = self.actual_values(order)
        if not actual:
            return False
        if self.operator == 'exact':
            return self.value in actual
        if self.operator == 'starts_with':
            return any(a.startswith(self.value) for a in actual)
        if self.operator == 'not_in':
            return not set(actual).intersection(self.value)
        return bool(set(actual).intersection(self.value))


@register('shipping_pincode', 'shipping_zip')
class ShippingPincodeCondition(ShippingCondition):
    operators = ('exact', 'starts_with', 'in_list', 'in', 'not_in')
    case_sensitive = True
    address_fields = ('zip',)


@register('shipping_city')
class ShippingCityCondition(ShippingCondition):
    address_fields = ('city',)


@register('shipping_state')
class ShippingStateCondition(ShippingCondition):
    address_fields = ('province', 'province_code')


@register('shipping_country')
class ShippingCountryCondition(ShippingCondition):
    address_fields = ('country_code', 'country')


@register('utm_source', 'utm_medium', 'utm_campaign')
class UtmCondition(ListCondition):
    operators = ('exact', 'contains', 'starts_with', 'not_contains')
    case_sensitive = False

    def test(self, order, customer):
        actual = order.utm.get(self.type[len('utm_'):])
        if actual is None:
            return False
        actual = actual.lower()
        if self.operator == 'exact':
            return actual == self.value
        if self.operator == 'contains':
            return self.value in actual
        if self.operator == 'starts_with':
            return actual.startswith(self.value)
        return self.value not in actual


# ==================== Parsing & evaluation ====================

def parse_condition(node: Any) -> Condition:
    """
    Parse one stored condition node.

    Raises:
        ConditionConfigError: unknown type, unsupported operator or malformed value
    """
    if not isinstance(node, dict):
        raise ConditionConfigError('Condition must be an object', node)
    type_name = node.get('type')
    cls = CONDITION_REGISTRY.get(type_name)
    if cls is None:
        raise ConditionConfigError(f"Unknown condition type '{type_name}'", node)
    operator = node.get('operator')
    if not operator and not issubclass(cls, LegacyOrderValueCondition):
        raise ConditionConfigError(f"Condition '{type_name}' is missing an operator", node)
    try:
        return cls(type_name, operator, node.get('value'), node.get('required_scope'))
    except ConditionConfigError as e:
        e.node = node
        raise


def parse_conditions(nodes: Any) -> List[Condition]:
    if nodes is None:
        return []
    if not isinstance(nodes, list):
        raise ConditionConfigError('Condition group must be a list')
    return [parse_condition(n) for n in nodes]


def required_scopes(nodes: Iterable[dict]) -> Set[str]:
    """Scopes needed by the parseable nodes in a group."""
    scopes = set()
    for node in nodes or []:
        try:
            scopes.update(parse_condition(node).required_scopes)
        except ConditionConfigError:
            continue
    return scopes


@dataclass
class GroupResult:
    passed: bool
    matched: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    below_threshold: bool = False


def evaluate_group(nodes: Any, order: OrderFact, customer: CustomerFact) -> GroupResult:
    """AND-combine a group; an empty group passes."""
    result = GroupResult(passed=True)
    if nodes is None:
        return result
    if not isinstance(nodes, list):
        logger.warning(f"Condition group is not a list: {nodes!r}")
        result.passed = False
        result.failed.append('malformed condition group')
        return result

    for node in nodes:
        try:
            condition = parse_condition(node)
        except ConditionConfigError as e:
            logger.warning(f"Skipping malformed condition {node!r}: {e.message}")
            result.passed = False
            result.failed.append(f"invalid: {e.message}")
            continue
        if condition.evaluate(order, customer):
            result.matched.append(condition.describe())
        else:
            result.passed = False
            result.failed.append(condition.describe())
            if condition.is_threshold:
                result.below_threshold = True
    return result


def evaluate(nodes: Any, order: OrderFact, customer: CustomerFact) -> bool:
    return evaluate_group(nodes, order, customer).passed


# ==================== Exclusions ====================

def check_exclusions(exclusion_rules: Optional[dict], order: OrderFact) -> Optional[str]:
    """Return the reason an order is excluded, or None."""
    rules = exclusion_rules or {}
    if rules.get('exclude_refunded') and (order.financial_status or '').lower() in ('refunded', 'partially_refunded'):
        return 'Order is refunded'
    if rules.get('exclude_cancelled') and order.cancelled:
        return 'Order is cancelled'
    if rules.get('exclude_test_orders') and order.test:
        return 'Test order'
    return None


# ==================== Save-time validation ====================

REWARD_TYPES = ('voucher', 'points', 'membership')
ALLOCATION_TIMINGS = ('instant', 'delayed')
CLAIM_METHODS = ('auto', 'click')
EXCLUSION_FLAGS = ('exclude_refunded', 'exclude_cancelled', 'exclude_test_orders')
GROUP_NAMES = (
    'trigger_conditions',
    'eligibility_conditions',
    'location_conditions',
    'attribution_conditions',
)


@dataclass
class ValidationReport:
    errors: List[Dict[str, Any]] = field(default_factory=list)
    missing_scopes: Set[str] = field(default_factory=set)

    @property
    def valid(self) -> bool:
        return not self.errors and not self.missing_scopes

    def add(self, path: str, message: str):
        self.errors.append({'field': path, 'message': message})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'errors': self.errors,
            'missing_scopes': sorted(self.missing_scopes)
        }


def _rule_value(rule: Any, name: str, default=None):
    if isinstance(rule, dict):
        return rule.get(name, default)
    return getattr(rule, name, default)


def validate_rule_config(rule: Any, granted_scopes: Optional[Set[str]] = None) -> ValidationReport:
    """
    Check a CampaignRule (or its dict form) for anything that would stop it
    from ever matching: malformed nodes, bad reward action, missing scopes.
    """
    report = ValidationReport()
    needed: Set[str] = set()

    for group in GROUP_NAMES:
        nodes = _rule_value(rule, group) or []
        if not isinstance(nodes, list):
            report.add(group, 'must be a list')
            continue
        for index, node in enumerate(nodes):
            try:
                needed.update(parse_condition(node).required_scopes)
            except ConditionConfigError as e:
                report.add(f'{group}[{index}]', e.message)

    exclusions = _rule_value(rule, 'exclusion_rules') or {}
    if not isinstance(exclusions, dict):
        report.add('exclusion_rules', 'must be an object')
    else:
        for key in exclusions:
            if key not in EXCLUSION_FLAGS:
                report.add('exclusion_rules', f"unknown flag '{key}'")

    action = _rule_value(rule, 'reward_action') or {}
    if not isinstance(action, dict):
        report.add('reward_action', 'must be an object')
    else:
        reward_type = action.get('type')
        if reward_type not in REWARD_TYPES:
            report.add('reward_action.type', f"must be one of {', '.join(REWARD_TYPES)}")
        if action.get('allocation_timing', 'instant') not in ALLOCATION_TIMINGS:
            report.add('reward_action.allocation_timing', f"must be one of {', '.join(ALLOCATION_TIMINGS)}")
        if action.get('claim_method', 'auto') not in CLAIM_METHODS:
            report.add('reward_action.claim_method', f"must be one of {', '.join(CLAIM_METHODS)}")
        if reward_type == 'membership' and not action.get('program_id'):
            report.add('reward_action.program_id', 'membership rewards need a program_id')
        if reward_type == 'points' and action.get('points') is not None:
            try:
                if int(action['points']) <= 0:
                    report.add('reward_action.points', 'must be positive')
            except (TypeError, ValueError):
                report.add('reward_action.points', 'must be an integer')

    for name in ('max_rewards_per_customer', 'max_rewards_total', 'max_enrollments'):
        value = _rule_value(rule, name)
        if value is not None:
            try:
                if int(value) < 0:
                    report.add(name, 'must not be negative')
            except (TypeError, ValueError):
                report.add(name, 'must be an integer')

    budget = _rule_value(rule, 'budget_cap')
    if budget is not None:
        try:
            if _as_decimal(budget) < 0:
                report.add('budget_cap', 'must not be negative')
        except ValueError:
            report.add('budget_cap', 'must be a number')

    if granted_scopes is not None:
        report.missing_scopes = needed - set(granted_scopes)

    return report
