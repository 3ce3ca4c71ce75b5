"""
End-to-end order scenarios: webhook in, trigger log and reward out.
"""
from datetime import datetime, timedelta

from rewardflow.extensions import db
from rewardflow.models import (
    CampaignRule,
    CampaignAllocation,
    CampaignTriggerLog,
    Member,
    MemberReferral,
    WebhookEvent,
)
from rewardflow.services.referral_service import ReferralService


class TestFirstOrderCampaign:
    """High-value first order from a new customer triggers a welcome voucher."""

    def test_single_allocation(self, sample_tenant, make_rule, order_payload, send_webhook):
        rule = make_rule(
            name='Big first order',
            trigger_conditions=[{'type': 'order_value', 'operator': 'gte', 'value': 200}],
            eligibility_conditions=[{'type': 'customer_type', 'operator': 'eq', 'value': 'new'}],
            reward_action={'type': 'voucher', 'discount_type': 'fixed_amount', 'discount_value': 25},
        )
        rule_id = rule.id

        response = send_webhook('orders/create', order_payload(order_id=7001, total='250.00'))

        assert response.status_code == 200
        body = response.get_json()
        assert body['success'] is True
        assert body['allocated'] == 1

        log = CampaignTriggerLog.query.one()
        assert log.trigger_result == 'success'
        assert log.reward_allocated is True
        assert log.order_id == '7001'

        allocation = CampaignAllocation.query.one()
        assert allocation.voucher.code.startswith('RF-')
        assert db.session.get(CampaignRule, rule_id).current_enrollments == 1

    def test_small_order_is_below_threshold(self, sample_tenant, make_rule, order_payload, send_webhook):
        make_rule(trigger_conditions=[{'type': 'order_value', 'operator': 'gte', 'value': 200}])

        send_webhook('orders/create', order_payload(total='150.00'))

        log = CampaignTriggerLog.query.one()
        assert log.trigger_result == 'below_threshold'
        assert log.reason == 'Order value 150.00 does not meet rule thresholds'
        assert CampaignAllocation.query.count() == 0

    def test_multi_fire_allocates_every_match(self, sample_tenant, make_rule, order_payload, send_webhook):
        sample_tenant.settings = {'campaigns': {'multi_fire': True}}
        db.session.commit()
        make_rule(priority=5)
        make_rule(priority=1, reward_action={'type': 'voucher', 'discount_value': 5})

        body = send_webhook('orders/create', order_payload()).get_json()

        assert body['allocated'] == 2
        assert CampaignAllocation.query.count() == 2

    def test_failed_allocation_is_logged(self, sample_tenant, make_rule, order_payload, send_webhook):
        rule = make_rule(reward_action={'type': 'membership', 'program_id': 31337})
        rule_id = rule.id

        response = send_webhook('orders/create', order_payload())

        assert response.status_code == 200
        log = CampaignTriggerLog.query.one()
        assert log.trigger_result == 'failed'
        assert log.reward_allocated is False
        assert db.session.get(CampaignRule, rule_id).current_enrollments == 0


class TestReferralJourney:

    def test_apply_then_first_order(self, client, sample_tenant, loyalty_program, sample_member,
                                    order_payload, send_webhook):
        client.post('/api/referrals/apply', json={
            'shop_domain': sample_tenant.shopify_domain,
            'referral_code': 'ALICE123',
            'referred_email': 'bob@example.com',
        })

        send_webhook('orders/create', order_payload(order_id=8001, total='80.00'))
        paid = send_webhook('orders/paid', order_payload(order_id=8001, total='80.00')).get_json()

        assert paid['referral']['success'] is True
        bob = Member.query.filter_by(email='bob@example.com').one()
        referral = MemberReferral.query.one()
        assert referral.status == 'completed'
        assert referral.referred_member_id == bob.id
        assert referral.order_id == '8001'


class TestCommands:

    def test_expire_referrals(self, app, sample_member):
        ReferralService(sample_member.tenant_id).apply_referral('ALICE123', referred_email='old@example.com')
        MemberReferral.query.update({MemberReferral.expires_at: datetime.utcnow() - timedelta(days=1)})
        db.session.commit()
        runner = app.test_cli_runner()

        dry = runner.invoke(args=['referrals', 'expire', '--dry-run'])
        assert '1 pending referrals would expire' in dry.output
        assert MemberReferral.query.one().status == 'pending'

        result = runner.invoke(args=['referrals', 'expire'])
        assert 'Expired 1 pending referrals' in result.output
        assert MemberReferral.query.one().status == 'expired'

    def test_referral_stats(self, app, sample_member):
        ReferralService(sample_member.tenant_id).apply_referral('ALICE123', referred_email='x@example.com')
        result = app.test_cli_runner().invoke(args=['referrals', 'stats', '--tenant-id', str(sample_member.tenant_id)])
        assert 'pending: 1' in result.output
        assert 'completed: 0' in result.output

    def test_list_and_replay_parked(self, app, sample_tenant, make_rule):
        make_rule()
        db.session.add(WebhookEvent(
            tenant_id=sample_tenant.id,
            event_id='evt-stuck',
            topic='orders/create',
            order_id='9100',
            status='parked',
            attempts=3,
            last_error='database is locked',
            payload={'id': 9100, 'total_price': '10.00', 'email': 'stuck@example.com'},
        ))
        db.session.commit()
        runner = app.test_cli_runner()

        listing = runner.invoke(args=['webhooks', 'list-parked'])
        assert 'order=9100' in listing.output

        result = runner.invoke(args=['webhooks', 'replay-parked'])
        assert 'Replayed: 1 processed, 0 still parked' in result.output
        assert WebhookEvent.query.one().status == 'processed'
        assert CampaignAllocation.query.filter_by(order_id='9100').count() == 1
