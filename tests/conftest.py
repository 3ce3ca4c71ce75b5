"""
Shared pytest fixtures for RewardFlow tests.

The `app` fixture keeps one application context pushed for the whole test,
so fixtures, services and test-client requests share the same session.
"""
import json
import hmac
import base64
import hashlib
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from rewardflow import create_app
from rewardflow.extensions import db
from rewardflow.models import (
    Tenant,
    Member,
    LoyaltyProgram,
    LoyaltyTier,
    EarningRule,
    EarningRuleType,
    CampaignRule,
)

SHOP_DOMAIN = 'test-shop.myshopify.com'
WEBHOOK_SECRET = 'shop-webhook-secret'


def generate_hmac_signature(payload: bytes, secret: str) -> str:
    """Generate Shopify-compatible HMAC signature."""
    return base64.b64encode(
        hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).digest()
    ).decode('utf-8')


@pytest.fixture
def app():
    """Create test application."""
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sample_tenant(app):
    """Tenant with every condition scope granted."""
    tenant = Tenant(
        shop_name='Test Shop',
        shopify_domain=SHOP_DOMAIN,
        webhook_secret=WEBHOOK_SECRET,
        granted_scopes='read_orders,read_customers,read_customer_address',
        settings={},
    )
    db.session.add(tenant)
    db.session.commit()
    return tenant


@pytest.fixture
def loyalty_program(app, sample_tenant):
    """1 point per $10, Bronze (x1, default) and Gold (x1.5) tiers, referral earn rules."""
    program = LoyaltyProgram(
        tenant_id=sample_tenant.id,
        name='Test Rewards',
        points_earn_rate=Decimal('1'),
        points_earn_divisor=Decimal('10'),
        points_value=Decimal('0.01'),
        allow_redemption=True,
        is_active=True,
    )
    db.session.add(program)
    db.session.flush()

    db.session.add_all([
        LoyaltyTier(tenant_id=sample_tenant.id, program_id=program.id, name='Bronze',
                    points_multiplier=Decimal('1'), is_default=True, display_order=1),
        LoyaltyTier(tenant_id=sample_tenant.id, program_id=program.id, name='Gold',
                    points_multiplier=Decimal('1.5'), display_order=2),
        EarningRule(tenant_id=sample_tenant.id, program_id=program.id,
                    rule_type=EarningRuleType.REFERRAL.value, points=500),
        EarningRule(tenant_id=sample_tenant.id, program_id=program.id,
                    rule_type=EarningRuleType.REFERRAL_COMPLETE.value, points=250),
    ])
    db.session.commit()
    return program


@pytest.fixture
def gold_tier(loyalty_program):
    return LoyaltyTier.query.filter_by(program_id=loyalty_program.id, name='Gold').first()


@pytest.fixture
def sample_member(app, sample_tenant):
    """Existing member who shares referral code ALICE123."""
    member = Member(
        tenant_id=sample_tenant.id,
        email='alice@example.com',
        phone='+14155550100',
        name='Alice Referrer',
        referral_code='ALICE123',
        order_count=3,
        paid_order_count=3,
        total_spend=Decimal('300.00'),
    )
    db.session.add(member)
    db.session.commit()
    return member


@pytest.fixture
def make_member(app, sample_tenant):
    """Factory for additional members."""
    counter = {'n': 0}

    def _make(email=None, phone=None, name='Test Customer', **kwargs):
        counter['n'] += 1
        member = Member(
            tenant_id=sample_tenant.id,
            email=email or f"customer{counter['n']}@example.com",
            phone=phone,
            name=name,
            referral_code=kwargs.pop('referral_code', f"CODE{counter['n']:04d}"),
            **kwargs
        )
        db.session.add(member)
        db.session.commit()
        return member

    return _make


@pytest.fixture
def make_rule(app, sample_tenant):
    """Factory for campaign rules; unbounded guardrails and a voucher reward by default."""
    counter = {'n': 0}

    def _make(**kwargs):
        counter['n'] += 1
        values = {
            'tenant_id': sample_tenant.id,
            'name': f"Rule {counter['n']}",
            'trigger_category': 'order',
            'trigger_conditions': [],
            'eligibility_conditions': [],
            'location_conditions': [],
            'attribution_conditions': [],
            'exclusion_rules': {},
            'reward_action': {'type': 'voucher', 'discount_type': 'fixed_amount', 'discount_value': 10},
            'priority': 0,
            'is_active': True,
            'created_at': datetime.utcnow() + timedelta(microseconds=counter['n']),
        }
        values.update(kwargs)
        rule = CampaignRule(**values)
        db.session.add(rule)
        db.session.commit()
        return rule

    return _make


@pytest.fixture
def order_payload():
    """Factory for Shopify-shaped order webhook bodies."""

    def _payload(order_id=5001, total='120.00', email='bob@example.com', phone=None,
                 orders_count=1, **extra):
        payload = {
            'id': order_id,
            'name': f'#{order_id}',
            'order_number': order_id,
            'total_price': total,
            'currency': 'USD',
            'email': email,
            'phone': phone,
            'financial_status': 'paid',
            'fulfillment_status': None,
            'gateway': 'shopify_payments',
            'payment_gateway_names': ['shopify_payments'],
            'discount_codes': [],
            'note_attributes': [],
            'test': False,
            'cancelled_at': None,
            'customer': {
                'id': 9001,
                'email': email,
                'first_name': 'Bob',
                'last_name': 'Buyer',
                'orders_count': orders_count,
                'total_spent': total,
                'tags': '',
            },
            'line_items': [
                {'product_id': 111, 'sku': 'SKU-RED', 'quantity': 1, 'price': total},
            ],
            'shipping_address': {
                'city': 'Austin',
                'province': 'Texas',
                'province_code': 'TX',
                'country': 'United States',
                'country_code': 'US',
                'zip': '78701',
            },
        }
        payload.update(extra)
        return payload

    return _payload


@pytest.fixture
def send_webhook(client):
    """POST a signed webhook the way Shopify does."""

    def _send(topic, payload, event_id=None, shop=SHOP_DOMAIN, secret=WEBHOOK_SECRET, signature=None):
        body = json.dumps(payload).encode('utf-8')
        headers = {
            'Content-Type': 'application/json',
            'X-Shopify-Shop-Domain': shop,
            'X-Shopify-Topic': topic,
            'X-Shopify-Hmac-SHA256': signature if signature is not None else generate_hmac_signature(body, secret),
        }
        if event_id:
            headers['X-Shopify-Webhook-Id'] = event_id
        return client.post(f'/webhook/{topic}', data=body, headers=headers)

    return _send


@pytest.fixture
def admin_headers(sample_tenant):
    return {'X-Shop-Domain': SHOP_DOMAIN, 'Content-Type': 'application/json'}
