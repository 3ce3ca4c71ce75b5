"""
Referral Service.

Lifecycle: pending -> completed | expired. Both are terminal.

- apply_referral creates a pending referral for a referee contact
- complete_referral fires only for the referee's first paid order and credits
  both sides through the points ledger
- expiry is applied lazily at completion time and by a periodic sweep
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..engine.facts import normalize_email, normalize_phone
from ..models.tenant import Tenant
from ..models.member import Member, MemberOrder
from ..models.loyalty import EarningRule, EarningRuleType, PointsTransactionType
from ..models.referral import MemberReferral, ReferralStatus
from ..utils.errors import ErrorCode
from ..utils.exceptions import ReferralError, ValidationError
from .points_service import PointsService

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY_DAYS = 90


def referee_key(email: Optional[str], phone: Optional[str]) -> Optional[str]:
    """The uniqueness key a live referral holds for its referee."""
    email = normalize_email(email)
    if email:
        return f'email:{email}'
    phone = normalize_phone(phone)
    if phone:
        return f'phone:{phone}'
    return None


def _validity_days() -> int:
    try:
        return int(current_app.config.get('REFERRAL_VALIDITY_DAYS', DEFAULT_VALIDITY_DAYS))
    except RuntimeError:
        return DEFAULT_VALIDITY_DAYS


def _skipped(reason: str, **extra) -> Dict[str, Any]:
    result = {'success': True, 'skipped': True, 'reason': reason}
    result.update(extra)
    return result


def _unlink_referee(referred_member_id: Optional[int], referrer_member_id: int) -> None:
    """Drop the referee's link to a referrer whose referral lapsed. Does not commit."""
    if referred_member_id is None:
        return
    Member.query.filter(
        Member.id == referred_member_id,
        Member.referred_by_id == referrer_member_id,
    ).update({Member.referred_by_id: None}, synchronize_session=False)


def get_tenant_by_domain(shop_domain: str) -> Tenant:
    tenant = None
    if shop_domain:
        tenant = Tenant.query.filter_by(shopify_domain=shop_domain.strip().lower(), is_active=True).first()
    if not tenant:
        raise ReferralError(ErrorCode.SHOP_NOT_FOUND, f'Shop {shop_domain} not found', 404)
    return tenant


class ReferralService:
    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    # ==================== Creation ====================

    def find_referrer(self, referral_code: str) -> Member:
        code = (referral_code or '').strip().upper()
        referrer = None
        if code:
            referrer = Member.query.filter_by(tenant_id=self.tenant_id, referral_code=code).first()
        if not referrer:
            raise ReferralError(ErrorCode.INVALID_CODE, 'Referral code not found', 404)
        return referrer

    def apply_referral(
        self,
        referral_code: str,
        referred_email: str = None,
        referred_phone: str = None,
        referred_name: str = None,
    ) -> Dict[str, Any]:
        """
        Create a pending referral.

        Raises:
            ReferralError: invalid_code, self_referral, already_referred
            ValidationError: no referee contact given
        """
        from .member_service import MemberService

        email = normalize_email(referred_email)
        phone = normalize_phone(referred_phone)
        key = referee_key(email, phone)
        if not key:
            raise ValidationError('An email or phone number is required', 'referred_email')

        referrer = self.find_referrer(referral_code)
        referee = MemberService(self.tenant_id).find_member(email, phone)

        if (referee and referee.id == referrer.id) \
                or (email and email == referrer.email) \
                or (phone and phone == referrer.phone):
            raise ReferralError(ErrorCode.SELF_REFERRAL, 'You cannot use your own referral code')

        # Only live referrals block; an expired one leaves the customer free
        contact_filters = []
        if email:
            contact_filters.append(MemberReferral.referred_email == email)
        if phone:
            contact_filters.append(MemberReferral.referred_phone == phone)
        if referee:
            contact_filters.append(MemberReferral.referred_member_id == referee.id)
        live = MemberReferral.query.filter(
            MemberReferral.tenant_id == self.tenant_id,
            MemberReferral.status.in_([ReferralStatus.PENDING.value, ReferralStatus.COMPLETED.value]),
            or_(*contact_filters),
        ).first()
        if live:
            raise ReferralError(ErrorCode.ALREADY_REFERRED, 'This customer has already been referred')

        program = PointsService(self.tenant_id).get_program()
        now = datetime.utcnow()
        referral = MemberReferral(
            tenant_id=self.tenant_id,
            loyalty_program_id=program.id if program else None,
            referral_code=referrer.referral_code,
            referrer_member_id=referrer.id,
            referred_member_id=referee.id if referee else None,
            referred_email=email,
            referred_phone=phone,
            referred_name=referred_name,
            active_referee_key=key,
            status=ReferralStatus.PENDING.value,
            created_at=now,
            expires_at=now + timedelta(days=_validity_days()),
        )
        db.session.add(referral)
        if referee:
            Member.query.filter(Member.id == referee.id).update(
                {Member.referred_by_id: referrer.id}, synchronize_session=False
            )

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ReferralError(ErrorCode.ALREADY_REFERRED, 'This customer has already been referred')

        logger.info(f"Referral {referral.id} created: member {referrer.id} referred {key}")
        return {
            'success': True,
            'referral_id': referral.id,
            'referrer_member_id': referrer.id,
            'referred_member_id': referral.referred_member_id,
            'referral': referral.to_dict(),
            'referrer_name': referrer.name,
        }

    def validate_code(self, referral_code: str) -> Dict[str, Any]:
        referrer = self.find_referrer(referral_code)
        first_name = (referrer.name or '').split(' ')[0] or None
        return {
            'valid': True,
            'referral_code': referrer.referral_code,
            'referrer_name': first_name,
        }

    def link_pending_referral(self, member: Member) -> Optional[MemberReferral]:
        """
        Attach an unmatched pending referral to a newly resolved member.
        Does not commit.
        """
        filters = []
        if member.email:
            filters.append(MemberReferral.referred_email == member.email)
        if member.phone:
            filters.append(MemberReferral.referred_phone == member.phone)
        if not filters:
            return None

        referral = MemberReferral.query.filter(
            MemberReferral.tenant_id == self.tenant_id,
            MemberReferral.status == ReferralStatus.PENDING.value,
            MemberReferral.referred_member_id.is_(None),
            or_(*filters),
        ).order_by(MemberReferral.created_at).first()
        if not referral or referral.referrer_member_id == member.id:
            return None

        referral.referred_member_id = member.id
        if member.referred_by_id is None:
            member.referred_by_id = referral.referrer_member_id
        logger.info(f"Linked referral {referral.id} to member {member.id}")
        return referral

    # ==================== Completion ====================

    def _first_paid(self, member: Member, order_id: str = None, paid_ordinal: int = None) -> bool:
        if paid_ordinal is None and order_id:
            member_order = MemberOrder.query.filter_by(member_id=member.id, order_id=str(order_id)).first()
            if member_order:
                paid_ordinal = member_order.paid_ordinal
        if paid_ordinal is not None:
            return paid_ordinal == 1
        return (member.paid_order_count or 0) <= 1

    def _rule_points(self, program_id: int, rule_type: str) -> int:
        rule = EarningRule.query.filter_by(
            program_id=program_id, rule_type=rule_type, is_active=True
        ).first()
        return rule.points if rule else 0

    def _expire(self, referral_id: int) -> bool:
        referral = db.session.get(MemberReferral, referral_id)
        expired = MemberReferral.query.filter(
            MemberReferral.id == referral_id,
            MemberReferral.status == ReferralStatus.PENDING.value,
        ).update({
            MemberReferral.status: ReferralStatus.EXPIRED.value,
            MemberReferral.active_referee_key: None,
        }, synchronize_session=False)
        if expired:
            _unlink_referee(referral.referred_member_id, referral.referrer_member_id)
        db.session.commit()
        return bool(expired)

    def complete_referral(
        self,
        member_id: int,
        loyalty_program_id: int = None,
        order_id: str = None,
        order_amount=None,
        paid_ordinal: int = None,
    ) -> Dict[str, Any]:
        """
        Complete the referee's pending referral and credit both sides.

        Skips (success with skipped=True) with reason not_first_order,
        no_referrer_linked, no_pending_referral_found, referral_expired or
        already_completed.
        """
        member = Member.query.filter_by(id=member_id, tenant_id=self.tenant_id).first()
        if not member:
            return {'success': False, 'error': 'member_not_found'}

        if not self._first_paid(member, order_id, paid_ordinal):
            return _skipped('not_first_order')

        if not member.referred_by_id:
            return _skipped('no_referrer_linked')

        referral = MemberReferral.query.filter(
            MemberReferral.tenant_id == self.tenant_id,
            MemberReferral.referred_member_id == member.id,
            MemberReferral.referrer_member_id == member.referred_by_id,
        ).order_by(MemberReferral.created_at.desc()).first()
        if not referral:
            return _skipped('no_pending_referral_found')
        if referral.status == ReferralStatus.COMPLETED.value:
            return _skipped('already_completed', referral_id=referral.id)
        if referral.status != ReferralStatus.PENDING.value:
            return _skipped('no_pending_referral_found')

        referral_id = referral.id
        if referral.is_expired():
            self._expire(referral_id)
            logger.info(f"Referral {referral_id} expired before completion")
            return _skipped('referral_expired', referral_id=referral_id)

        points_service = PointsService(self.tenant_id)
        program = points_service.get_program(loyalty_program_id or referral.loyalty_program_id)
        if not program and (loyalty_program_id or referral.loyalty_program_id):
            program = points_service.get_program()
        referrer = db.session.get(Member, referral.referrer_member_id)

        referrer_points = referee_points = 0
        if program:
            # Status rows are created up front, outside the completion transaction
            points_service.ensure_status(referrer, program)
            points_service.ensure_status(member, program)
            referrer_points = self._rule_points(program.id, EarningRuleType.REFERRAL.value)
            referee_points = self._rule_points(program.id, EarningRuleType.REFERRAL_COMPLETE.value)

        flipped = MemberReferral.query.filter(
            MemberReferral.id == referral_id,
            MemberReferral.status == ReferralStatus.PENDING.value,
        ).update({
            MemberReferral.status: ReferralStatus.COMPLETED.value,
            MemberReferral.completed_at: datetime.utcnow(),
            MemberReferral.order_id: str(order_id) if order_id is not None else None,
            MemberReferral.points_awarded: referrer_points,
            MemberReferral.referee_points_awarded: referee_points,
        }, synchronize_session=False)
        if not flipped:
            db.session.rollback()
            return _skipped('already_completed', referral_id=referral_id)

        try:
            referrer_result = referee_result = {}
            if program:
                referrer_result = points_service.credit_points(
                    referrer, referrer_points,
                    transaction_type=PointsTransactionType.BONUS.value,
                    idempotency_key=f'referral:{referral_id}:referrer',
                    reference_id=str(referral_id),
                    description='Referral reward',
                    program=program,
                    commit=False,
                )
                referee_result = points_service.credit_points(
                    member, referee_points,
                    transaction_type=PointsTransactionType.BONUS.value,
                    idempotency_key=f'referral:{referral_id}:referee',
                    reference_id=str(referral_id),
                    description='Welcome reward for joining through a referral',
                    program=program,
                    order_amount=order_amount,
                    commit=False,
                )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return _skipped('already_completed', referral_id=referral_id)

        logger.info(
            f"Referral {referral_id} completed by order {order_id}: "
            f"referrer +{referrer_points}, referee +{referee_points}"
        )
        return {
            'success': True,
            'skipped': False,
            'referral_id': referral_id,
            'referrer_member_id': referral.referrer_member_id,
            'referee_member_id': member_id,
            'referrer_points': referrer_points,
            'referee_points': referee_points,
            'referrer_points_awarded': referrer_points,
            'referee_points_awarded': referee_points,
            'referrer_new_balance': referrer_result.get('balance'),
            'referee_new_balance': referee_result.get('balance'),
        }

    # ==================== Expiry ====================

    @staticmethod
    def expire_stale_referrals(now: datetime = None, tenant_id: int = None) -> int:
        """Expire every pending referral past expires_at. Returns the count."""
        now = now or datetime.utcnow()
        query = MemberReferral.query.filter(
            MemberReferral.status == ReferralStatus.PENDING.value,
            MemberReferral.expires_at < now,
        )
        if tenant_id:
            query = query.filter(MemberReferral.tenant_id == tenant_id)
        links = query.with_entities(MemberReferral.referred_member_id, MemberReferral.referrer_member_id).all()
        expired = query.update({
            MemberReferral.status: ReferralStatus.EXPIRED.value,
            MemberReferral.active_referee_key: None,
        }, synchronize_session=False)
        for referred_member_id, referrer_member_id in links:
            _unlink_referee(referred_member_id, referrer_member_id)
        db.session.commit()
        if expired:
            logger.info(f"Expired {expired} stale referrals")
        return expired
