"""
Tests for campaign guardrails.

Caps are enforced with compare-and-increment updates, so a rejected
reservation must leave every counter exactly as it was, and concurrent
allocations can never overshoot a cap.
"""
import threading
from decimal import Decimal

import pytest

from rewardflow import create_app
from rewardflow.extensions import db
from rewardflow.engine.facts import OrderFact
from rewardflow.models import (
    Tenant,
    Member,
    CampaignRule,
    CampaignAllocation,
    CampaignMemberCounter,
)
from rewardflow.services.allocation_service import AllocationService
from rewardflow.services.guardrail_service import GuardrailService
from rewardflow.services.ingestion_service import run_with_retry


def reserve(rule, member, cost=Decimal('0')):
    service = GuardrailService()
    service.ensure_counter(rule.id, member.id)
    return service.reserve(rule, member.id, cost)


def counter_for(rule_id, member_id):
    return db.session.query(CampaignMemberCounter.allocation_count).filter_by(
        campaign_rule_id=rule_id, member_id=member_id
    ).scalar()


def enrollments(rule_id):
    return db.session.query(CampaignRule.current_enrollments).filter_by(id=rule_id).scalar()


class TestGuardrailService:

    def test_unbounded_rule_always_reserves(self, app, make_rule, make_member):
        rule = make_rule()
        member = make_member()
        rule_id, member_id = rule.id, member.id

        for _ in range(3):
            assert reserve(rule, member).ok is True
            db.session.commit()

        assert enrollments(rule_id) == 3
        assert counter_for(rule_id, member_id) == 3

    def test_total_cap(self, app, make_rule, make_member):
        rule = make_rule(max_enrollments=1)
        first, second = make_member(), make_member()
        rule_id = rule.id

        assert reserve(rule, first).ok is True
        db.session.commit()

        rejected = reserve(rule, second)
        assert rejected.ok is False
        assert rejected.result == 'max_reached'
        assert enrollments(rule_id) == 1

    def test_max_rewards_total(self, app, make_rule, make_member):
        rule = make_rule(max_rewards_total=2)
        rule_id = rule.id
        members = [make_member() for _ in range(3)]

        outcomes = []
        for member in members:
            outcome = reserve(db.session.get(CampaignRule, rule_id), member)
            if outcome.ok:
                db.session.commit()
            outcomes.append(outcome.result)

        assert outcomes == [None, None, 'max_reached']
        assert enrollments(rule_id) == 2

    def test_per_customer_cap_rolls_back_global_increment(self, app, make_rule, make_member):
        """The global counter bumped before the per-customer check must not leak."""
        rule = make_rule(max_rewards_per_customer=1)
        member = make_member()
        rule_id, member_id = rule.id, member.id

        assert reserve(rule, member).ok is True
        db.session.commit()

        rejected = reserve(db.session.get(CampaignRule, rule_id), member)
        assert rejected.result == 'already_enrolled'
        assert enrollments(rule_id) == 1
        assert counter_for(rule_id, member_id) == 1

    def test_budget_cap_rolls_back_earlier_increments(self, app, make_rule, make_member):
        rule = make_rule(budget_cap=Decimal('15.00'))
        first, second = make_member(), make_member()
        rule_id, second_id = rule.id, second.id

        assert reserve(rule, first, Decimal('10')).ok is True
        db.session.commit()

        rejected = reserve(db.session.get(CampaignRule, rule_id), second, Decimal('10'))
        assert rejected.result == 'budget_exceeded'
        assert enrollments(rule_id) == 1
        assert counter_for(rule_id, second_id) == 0

        refreshed = db.session.get(CampaignRule, rule_id)
        assert refreshed.budget_spent == Decimal('10')

    def test_budget_allows_exact_fit(self, app, make_rule, make_member):
        rule = make_rule(budget_cap=Decimal('20.00'))
        rule_id = rule.id

        assert reserve(rule, make_member(), Decimal('10')).ok is True
        db.session.commit()
        assert reserve(db.session.get(CampaignRule, rule_id), make_member(), Decimal('10')).ok is True
        db.session.commit()

        assert db.session.get(CampaignRule, rule_id).budget_spent == Decimal('20')

    def test_stale_rule_object_cannot_overshoot(self, app, make_rule, make_member):
        """Caps are checked in the database, not on the loaded object."""
        rule = make_rule(max_enrollments=1)
        stale = db.session.get(CampaignRule, rule.id)
        rule_id = rule.id

        CampaignRule.query.filter_by(id=rule_id).update({CampaignRule.current_enrollments: 1})
        db.session.commit()

        assert reserve(stale, make_member()).result == 'max_reached'
        assert enrollments(rule_id) == 1

    def test_ensure_counter_is_idempotent(self, app, make_rule, make_member):
        rule, member = make_rule(), make_member()
        service = GuardrailService()
        service.ensure_counter(rule.id, member.id)
        service.ensure_counter(rule.id, member.id)
        assert CampaignMemberCounter.query.filter_by(campaign_rule_id=rule.id).count() == 1


class TestConcurrentAllocation:
    """Parallel allocations against a file database with real connections per thread."""

    THREADS = 8

    @pytest.fixture
    def file_app(self, tmp_path):
        app = create_app('testing', config_overrides={
            'SQLALCHEMY_DATABASE_URI': f'sqlite:///{tmp_path}/guardrails.db',
            'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        })
        with app.app_context():
            db.create_all()
        yield app
        with app.app_context():
            db.session.remove()
            db.drop_all()
            db.engine.dispose()

    def _seed(self, app, cap_field, cap_value, member_count):
        with app.app_context():
            tenant = Tenant(shop_name='Race Shop', shopify_domain='race.myshopify.com',
                            granted_scopes='read_orders', settings={})
            db.session.add(tenant)
            db.session.flush()
            rule = CampaignRule(
                tenant_id=tenant.id, name='Limited', trigger_category='order',
                reward_action={'type': 'voucher', 'discount_type': 'fixed_amount', 'discount_value': 5},
                priority=0, is_active=True, **{cap_field: cap_value},
            )
            db.session.add(rule)
            members = [
                Member(tenant_id=tenant.id, email=f'racer{i}@example.com', referral_code=f'RACE{i:04d}')
                for i in range(member_count)
            ]
            db.session.add_all(members)
            db.session.commit()
            return tenant.id, rule.id, [m.id for m in members]

    def _race(self, app, tenant_id, rule_id, attempts):
        """attempts: list of (member_id, order_id); returns the allocation results."""
        results = []
        errors = []
        barrier = threading.Barrier(len(attempts))

        def worker(member_id, order_id):
            with app.app_context():
                try:
                    barrier.wait()

                    def attempt():
                        rule = db.session.get(CampaignRule, rule_id)
                        member = db.session.get(Member, member_id)
                        order = OrderFact(order_id=order_id, total_price=Decimal('100'))
                        return AllocationService(tenant_id).allocate(rule, order, member)

                    result = run_with_retry(attempt, max_attempts=20, backoff_seconds=0.01)
                    results.append(result.success)
                except Exception as e:  # surfaced by the assertion below
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=a) for a in attempts]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        return results

    def test_global_cap_never_overshoots(self, file_app):
        tenant_id, rule_id, member_ids = self._seed(file_app, 'max_enrollments', 1, self.THREADS)
        attempts = [(member_id, f'order-{i}') for i, member_id in enumerate(member_ids)]

        results = self._race(file_app, tenant_id, rule_id, attempts)

        assert results.count(True) == 1
        with file_app.app_context():
            assert enrollments(rule_id) == 1
            assert CampaignAllocation.query.filter_by(campaign_rule_id=rule_id).count() == 1

    def test_per_customer_cap_never_overshoots(self, file_app):
        tenant_id, rule_id, member_ids = self._seed(file_app, 'max_rewards_per_customer', 1, 1)
        attempts = [(member_ids[0], f'order-{i}') for i in range(self.THREADS)]

        results = self._race(file_app, tenant_id, rule_id, attempts)

        assert results.count(True) == 1
        with file_app.app_context():
            assert counter_for(rule_id, member_ids[0]) == 1
            assert enrollments(rule_id) == 1

    def test_same_order_allocates_once(self, file_app):
        tenant_id, rule_id, member_ids = self._seed(file_app, 'max_enrollments', None, 1)
        attempts = [(member_ids[0], 'order-dup') for _ in range(self.THREADS)]

        results = self._race(file_app, tenant_id, rule_id, attempts)

        assert all(results)
        with file_app.app_context():
            assert CampaignAllocation.query.filter_by(campaign_rule_id=rule_id).count() == 1
            assert enrollments(rule_id) == 1
