"""
Read-only facts the condition evaluator works on.

OrderFact is built once per webhook from either a raw Shopify order payload
or the flattened shape used by the dry-run endpoint. CustomerFact carries
the customer's history as of this order.
"""
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional


UTM_FIELDS = ('source', 'medium', 'campaign')
REFERRAL_ATTRIBUTES = ('referral_code', 'ref', 'referral', 'referred_by', 'ref_code')


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Keep digits and a leading '+' so formatting differences still match."""
    if not phone:
        return None
    phone = str(phone).strip()
    digits = re.sub(r'\D', '', phone)
    if not digits:
        return None
    return ('+' + digits) if phone.startswith('+') else digits


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None or value == '':
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _split_tags(tags: Any) -> List[str]:
    if not tags:
        return []
    if isinstance(tags, (list, tuple)):
        return [str(t).strip() for t in tags if str(t).strip()]
    return [t.strip() for t in str(tags).split(',') if t.strip()]


def _referral_code_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    """Referral code captured as a cart attribute."""
    if payload.get('referral_code'):
        return str(payload['referral_code']).strip().upper() or None
    for attr in payload.get('note_attributes') or []:
        if str(attr.get('name') or '').strip().lower() in REFERRAL_ATTRIBUTES:
            code = str(attr.get('value') or '').strip().upper()
            if code:
                return code
    return None


def _utm_from_payload(payload: Dict[str, Any]) -> Dict[str, str]:
    utm = {}
    for attr in payload.get('note_attributes') or []:
        name = str(attr.get('name') or '').strip().lower()
        if name.startswith('utm_'):
            name = name[4:]
        if name in UTM_FIELDS and attr.get('value') is not None:
            utm[name] = str(attr['value'])
    for key in UTM_FIELDS:
        value = payload.get(f'utm_{key}')
        if value is not None:
            utm[key] = str(value)
    explicit = payload.get('utm') or {}
    for key in UTM_FIELDS:
        if explicit.get(key) is not None:
            utm[key] = str(explicit[key])
    return utm


@dataclass
class OrderFact:
    """A commerce order as seen by the campaign engine."""
    order_id: str
    order_number: Optional[str] = None
    total_price: Decimal = Decimal('0')
    currency: Optional[str] = None
    line_items: List[Dict[str, Any]] = field(default_factory=list)
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None
    shopify_customer_id: Optional[str] = None
    customer_tags: Optional[List[str]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    gateway: Optional[str] = None
    payment_gateway_names: List[str] = field(default_factory=list)
    payment_method: Optional[str] = None
    discount_codes: Optional[List[str]] = None
    utm: Dict[str, str] = field(default_factory=dict)
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    cancelled: bool = False
    test: bool = False
    lifetime_order_count: Optional[int] = None
    lifetime_spend: Optional[Decimal] = None
    is_first_order: Optional[bool] = None
    referral_code: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'OrderFact':
        """Build from a Shopify order webhook body or the flattened event shape."""
        customer = payload.get('customer') or {}
        shipping = payload.get('shipping_address')

        order_id = payload.get('order_id', payload.get('id'))
        order_number = payload.get('order_number') or payload.get('name')

        email = (payload.get('customer_email') or payload.get('email')
                 or payload.get('contact_email') or customer.get('email'))
        phone = (payload.get('customer_phone') or payload.get('phone')
                 or customer.get('phone') or (shipping or {}).get('phone'))

        name = payload.get('customer_name')
        if not name and customer:
            name = ' '.join(p for p in (customer.get('first_name'), customer.get('last_name')) if p) or None

        tags = payload.get('customer_tags', customer.get('tags') if customer else None)

        codes = payload.get('discount_codes')
        if codes is not None:
            codes = [c.get('code') if isinstance(c, dict) else str(c) for c in codes]
            codes = [c for c in codes if c]

        lifetime_count = _to_int(payload.get('lifetime_order_count', customer.get('orders_count')))
        lifetime_spend = to_decimal(payload.get('lifetime_spend', customer.get('total_spent')))

        is_first = payload.get('is_first_order')
        if is_first is None and lifetime_count is not None:
            is_first = lifetime_count <= 1

        return cls(
            order_id=str(order_id) if order_id is not None else '',
            order_number=str(order_number) if order_number is not None else None,
            total_price=to_decimal(payload.get('total_price'), Decimal('0')),
            currency=payload.get('currency'),
            line_items=list(payload.get('line_items') or []),
            customer_email=normalize_email(email),
            customer_phone=normalize_phone(phone),
            customer_name=name,
            shopify_customer_id=str(customer['id']) if customer.get('id') is not None else None,
            customer_tags=_split_tags(tags) if tags is not None else None,
            shipping_address=shipping,
            gateway=payload.get('gateway'),
            payment_gateway_names=list(payload.get('payment_gateway_names') or []),
            payment_method=payload.get('payment_method'),
            discount_codes=codes,
            utm=_utm_from_payload(payload),
            financial_status=payload.get('financial_status'),
            fulfillment_status=payload.get('fulfillment_status'),
            cancelled=bool(payload.get('cancelled_at') or payload.get('cancelled')),
            test=bool(payload.get('test')),
            lifetime_order_count=lifetime_count,
            lifetime_spend=lifetime_spend,
            is_first_order=is_first,
            referral_code=_referral_code_from_payload(payload),
        )

    @property
    def item_count(self) -> int:
        return len(self.line_items)

    @property
    def product_keys(self) -> List[str]:
        """Product ids and SKUs of all line items."""
        keys = []
        for item in self.line_items:
            for attr in ('product_id', 'sku'):
                if item.get(attr) not in (None, ''):
                    keys.append(str(item[attr]))
        return keys

    @property
    def payment_kind(self) -> Optional[str]:
        """'cod' or 'prepaid'; None when the order carries no payment data."""
        if self.payment_method:
            return self.payment_method.lower()
        gateway = (self.gateway or '').lower()
        names = [n.lower() for n in self.payment_gateway_names]
        if not gateway and not names:
            return None
        if 'cod' in gateway or any('cash' in n or 'cod' in n for n in names):
            return 'cod'
        return 'prepaid'

    @property
    def payment_labels(self) -> List[str]:
        """Every lowercased label a payment_method condition may compare against."""
        labels = []
        if self.payment_kind:
            labels.append(self.payment_kind)
        if self.gateway:
            labels.append(self.gateway.lower())
        labels.extend(n.lower() for n in self.payment_gateway_names)
        return labels

    def shipping(self, attr: str) -> Optional[str]:
        if not self.shipping_address:
            return None
        value = self.shipping_address.get(attr)
        return str(value) if value not in (None, '') else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order_id': self.order_id,
            'order_number': self.order_number,
            'total_price': str(self.total_price),
            'currency': self.currency,
            'item_count': self.item_count,
            'customer_email': self.customer_email,
            'customer_phone': self.customer_phone,
            'payment_method': self.payment_kind,
            'discount_codes': self.discount_codes,
            'utm': self.utm,
            'financial_status': self.financial_status,
            'cancelled': self.cancelled,
            'test': self.test
        }


@dataclass
class CustomerFact:
    """The customer's history as of this order."""
    prior_order_count: Optional[int] = None
    lifetime_spend: Optional[Decimal] = None
    tags: Optional[List[str]] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def order_ordinal(self) -> Optional[int]:
        """1-based position of this order in the customer's history."""
        if self.prior_order_count is None:
            return None
        return self.prior_order_count + 1

    @property
    def lifetime_order_count(self) -> Optional[int]:
        return self.order_ordinal

    @classmethod
    def from_member_order(cls, member, member_order, order: OrderFact) -> 'CustomerFact':
        """From the persisted, frozen MemberOrder position."""
        tags = set(member.tag_list)
        tags.update(order.customer_tags or [])
        spend = member_order.cumulative_spend
        if spend is None:
            spend = member.total_spend
        return cls(
            prior_order_count=member_order.ordinal - 1,
            lifetime_spend=Decimal(str(spend)) if spend is not None else None,
            tags=sorted(tags),
            email=member.email,
            phone=member.phone,
        )

    @classmethod
    def from_order(cls, order: OrderFact) -> 'CustomerFact':
        """From platform-supplied lifetime stats only (no persisted history)."""
        prior = None
        if order.lifetime_order_count is not None:
            prior = max(order.lifetime_order_count - 1, 0)
        elif order.is_first_order is not None:
            prior = 0 if order.is_first_order else None
        return cls(
            prior_order_count=prior,
            lifetime_spend=order.lifetime_spend,
            tags=order.customer_tags,
            email=order.customer_email,
            phone=order.customer_phone,
        )
