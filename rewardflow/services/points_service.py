"""
Points Service for RewardFlow.

Points math floors at every step:

    points = floor(floor(order_amount / points_earn_divisor) * points_earn_rate * tier_multiplier)

e.g. 99 / 10 -> 9, 9 * 1 * 1.5 -> 13.

LEDGER WRITES:
- MemberLoyaltyStatus.points_balance is changed only by a conditional
  UPDATE (debits require balance >= amount)
- the new balance is read back inside the same transaction and stored as
  balance_after on the immutable LoyaltyPointsTransaction row
- idempotency keys (order:<id>:earned, referral:<id>:referrer, ...) make
  every credit safe under webhook redelivery
"""
import logging
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, Dict, Any, Tuple

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..engine.facts import normalize_email
from ..models.tenant import Tenant
from ..models.member import Member
from ..models.loyalty import (
    LoyaltyProgram,
    LoyaltyTier,
    MemberLoyaltyStatus,
    LoyaltyPointsTransaction,
    PointsTransactionType,
)
from ..utils.exceptions import InsufficientPointsError

logger = logging.getLogger(__name__)


def floor_points(value: Decimal) -> int:
    return int(Decimal(value).to_integral_value(rounding=ROUND_FLOOR))


def calculate_points(
    order_amount,
    earn_rate=Decimal('1'),
    earn_divisor=Decimal('1'),
    multiplier=Decimal('1')
) -> int:
    """Floor-everywhere points formula. Negative or zero amounts earn nothing."""
    amount = Decimal(str(order_amount or 0))
    divisor = Decimal(str(earn_divisor or 1))
    if amount <= 0 or divisor <= 0:
        return 0
    units = floor_points(amount / divisor)
    points = floor_points(Decimal(units) * Decimal(str(earn_rate)) * Decimal(str(multiplier or 1)))
    return max(points, 0)


class PointsService:
    """
    Usage:
        service = PointsService(tenant_id)
        service.award_order_points(member, order_id, Decimal('99.00'))
        service.credit_points(member, 500, idempotency_key='referral:7:referrer')
    """

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    # ==================== Program & status ====================

    def get_program(self, program_id: int = None) -> Optional[LoyaltyProgram]:
        query = LoyaltyProgram.query.filter_by(tenant_id=self.tenant_id, is_active=True)
        if program_id:
            query = query.filter_by(id=program_id)
        return query.order_by(LoyaltyProgram.id).first()

    def get_status(self, member_id: int, program_id: int) -> Optional[MemberLoyaltyStatus]:
        return MemberLoyaltyStatus.query.filter_by(member_id=member_id, program_id=program_id).first()

    def ensure_status(self, member: Member, program: LoyaltyProgram) -> MemberLoyaltyStatus:
        """
        Get or create the member's status row. Creation commits in its own
        short transaction, so call this before starting a ledger transaction.
        """
        status = self.get_status(member.id, program.id)
        if status:
            return status

        default_tier = LoyaltyTier.query.filter_by(program_id=program.id, is_default=True).first()
        status = MemberLoyaltyStatus(
            tenant_id=self.tenant_id,
            member_id=member.id,
            program_id=program.id,
            current_tier_id=member.tier_id or (default_tier.id if default_tier else None),
            points_balance=0,
            lifetime_points_earned=0,
            lifetime_points_redeemed=0,
        )
        db.session.add(status)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            status = self.get_status(member.id, program.id)
        return status

    def tier_for(self, member: Member, status: MemberLoyaltyStatus = None) -> Optional[LoyaltyTier]:
        if status and status.current_tier:
            return status.current_tier
        return member.tier

    def multiplier_for(self, member: Member, status: MemberLoyaltyStatus = None) -> Decimal:
        tier = self.tier_for(member, status)
        if tier and tier.points_multiplier:
            return Decimal(str(tier.points_multiplier))
        return Decimal('1')

    def points_value_for(self, program: LoyaltyProgram, tier: LoyaltyTier = None) -> Decimal:
        if tier and tier.points_value is not None:
            return Decimal(str(tier.points_value))
        return Decimal(str(program.points_value))

    def calculate_order_points(self, member: Member, program: LoyaltyProgram, order_amount) -> int:
        status = self.get_status(member.id, program.id)
        return calculate_points(
            order_amount,
            program.points_earn_rate,
            program.points_earn_divisor,
            self.multiplier_for(member, status),
        )

    # ==================== Ledger ====================

    def _apply(
        self,
        status: MemberLoyaltyStatus,
        member_id: int,
        delta: int,
        transaction_type: str,
        idempotency_key: str = None,
        reference_id: str = None,
        description: str = None,
        order_amount=None,
    ) -> Tuple[LoyaltyPointsTransaction, bool]:
        """
        Apply a signed balance change and write the ledger row. Does not commit.

        Returns:
            (transaction, duplicate)

        Raises:
            InsufficientPointsError: debit larger than the balance
        """
        if idempotency_key:
            existing = LoyaltyPointsTransaction.query.filter_by(idempotency_key=idempotency_key).first()
            if existing:
                return existing, True

        status_id = status.id
        values = {MemberLoyaltyStatus.points_balance: MemberLoyaltyStatus.points_balance + delta}
        if delta > 0 and transaction_type in (PointsTransactionType.EARNED.value, PointsTransactionType.BONUS.value):
            values[MemberLoyaltyStatus.lifetime_points_earned] = MemberLoyaltyStatus.lifetime_points_earned + delta
        if delta < 0 and transaction_type == PointsTransactionType.REDEEMED.value:
            values[MemberLoyaltyStatus.lifetime_points_redeemed] = MemberLoyaltyStatus.lifetime_points_redeemed - delta

        query = MemberLoyaltyStatus.query.filter(MemberLoyaltyStatus.id == status_id)
        if delta < 0:
            query = query.filter(MemberLoyaltyStatus.points_balance >= -delta)
        if not query.update(values, synchronize_session=False):
            current = db.session.query(MemberLoyaltyStatus.points_balance).filter_by(id=status_id).scalar()
            raise InsufficientPointsError(current or 0, -delta)

        balance = db.session.query(MemberLoyaltyStatus.points_balance).filter_by(id=status_id).scalar()
        transaction = LoyaltyPointsTransaction(
            tenant_id=self.tenant_id,
            member_loyalty_status_id=status_id,
            member_id=member_id,
            transaction_type=transaction_type,
            points_amount=delta,
            balance_after=balance,
            order_amount=order_amount,
            reference_id=str(reference_id) if reference_id is not None else None,
            idempotency_key=idempotency_key,
            description=description,
        )
        db.session.add(transaction)
        db.session.flush()
        return transaction, False

    def _existing(self, idempotency_key: str) -> Optional[LoyaltyPointsTransaction]:
        if not idempotency_key:
            return None
        return LoyaltyPointsTransaction.query.filter_by(idempotency_key=idempotency_key).first()

    def _result(self, transaction: LoyaltyPointsTransaction, duplicate: bool) -> Dict[str, Any]:
        return {
            'success': True,
            'duplicate': duplicate,
            'points': transaction.points_amount,
            'balance': transaction.balance_after,
            'transaction': transaction.to_dict(),
        }

    def _write(self, member: Member, program: LoyaltyProgram, delta: int, transaction_type: str,
               commit: bool, **kwargs) -> Dict[str, Any]:
        status = self.ensure_status(member, program)
        member_id = member.id
        try:
            transaction, duplicate = self._apply(status, member_id, delta, transaction_type, **kwargs)
            if commit:
                db.session.commit()
        except IntegrityError:
            # Same idempotency key written concurrently
            db.session.rollback()
            existing = self._existing(kwargs.get('idempotency_key'))
            if existing is None:
                raise
            return self._result(existing, True)
        return self._result(transaction, duplicate)

    def credit_points(
        self,
        member: Member,
        points: int,
        transaction_type: str = PointsTransactionType.BONUS.value,
        idempotency_key: str = None,
        reference_id: str = None,
        description: str = None,
        program: LoyaltyProgram = None,
        order_amount=None,
        commit: bool = True,
    ) -> Dict[str, Any]:
        """Credit a positive number of points."""
        program = program or self.get_program()
        if not program:
            return {'success': False, 'error': 'no_loyalty_program'}
        if points <= 0:
            return {'success': True, 'duplicate': False, 'points': 0,
                    'balance': self.get_balance(member.id, program.id)}
        return self._write(
            member, program, int(points), transaction_type, commit,
            idempotency_key=idempotency_key, reference_id=reference_id,
            description=description, order_amount=order_amount,
        )

    def award_order_points(self, member: Member, order_id: str, order_amount,
                           program: LoyaltyProgram = None, commit: bool = True) -> Dict[str, Any]:
        """Purchase earning on orders/paid."""
        program = program or self.get_program()
        if not program:
            return {'success': False, 'error': 'no_loyalty_program'}
        self.ensure_status(member, program)
        points = self.calculate_order_points(member, program, order_amount)
        result = self.credit_points(
            member, points,
            transaction_type=PointsTransactionType.EARNED.value,
            idempotency_key=f'order:{order_id}:earned',
            reference_id=order_id,
            description=f'Points earned on order {order_id}',
            program=program,
            order_amount=order_amount,
            commit=commit,
        )
        if result.get('success') and not result.get('duplicate') and points:
            logger.info(f"Awarded {points} points to member {member.id} for order {order_id}")
        return result

    def redeem_points(self, member: Member, points: int, reference_id: str = None,
                      idempotency_key: str = None, description: str = None,
                      program: LoyaltyProgram = None) -> Dict[str, Any]:
        program = program or self.get_program()
        if not program:
            return {'success': False, 'error': 'no_loyalty_program'}
        if not program.allow_redemption:
            return {'success': False, 'error': 'redemption_disabled'}
        if points <= 0:
            return {'success': False, 'error': 'invalid_points'}
        try:
            return self._write(
                member, program, -int(points), PointsTransactionType.REDEEMED.value, True,
                idempotency_key=idempotency_key, reference_id=reference_id,
                description=description or f'Redeemed {points} points',
            )
        except InsufficientPointsError as e:
            db.session.rollback()
            return {'success': False, 'error': e.code, 'current_balance': e.current, 'required': e.required}

    def adjust_points(self, member: Member, points: int, reason: str,
                      idempotency_key: str = None, program: LoyaltyProgram = None) -> Dict[str, Any]:
        """Manual +/- adjustment. A debit never takes the balance below zero."""
        program = program or self.get_program()
        if not program:
            return {'success': False, 'error': 'no_loyalty_program'}
        if points == 0:
            return {'success': False, 'error': 'invalid_points'}
        try:
            return self._write(
                member, program, int(points), PointsTransactionType.ADJUSTMENT.value, True,
                idempotency_key=idempotency_key, description=reason,
            )
        except InsufficientPointsError as e:
            db.session.rollback()
            return {'success': False, 'error': e.code, 'current_balance': e.current, 'required': e.required}

    def get_balance(self, member_id: int, program_id: int = None) -> int:
        """Latest ledger balance_after, falling back to the status cache."""
        program = self.get_program(program_id)
        if not program:
            return 0
        status = self.get_status(member_id, program.id)
        if not status:
            return 0
        latest = LoyaltyPointsTransaction.query.filter_by(
            member_loyalty_status_id=status.id
        ).order_by(LoyaltyPointsTransaction.id.desc()).first()
        return latest.balance_after if latest else status.points_balance


def check_redemption(shop_domain: str, customer_email: str, points_to_redeem) -> Dict[str, Any]:
    """
    Storefront check: can this customer redeem this many points, and what is
    it worth? Read-only.
    """
    tenant = Tenant.query.filter_by(shopify_domain=shop_domain, is_active=True).first()
    if not tenant:
        return {'valid': False, 'error': 'shop_not_found'}

    try:
        points = int(points_to_redeem)
    except (TypeError, ValueError):
        return {'valid': False, 'error': 'invalid_points'}
    if points <= 0:
        return {'valid': False, 'error': 'invalid_points'}

    email = normalize_email(customer_email)
    member = Member.query.filter_by(tenant_id=tenant.id, email=email).first() if email else None
    if not member:
        return {'valid': False, 'error': 'member_not_found'}

    service = PointsService(tenant.id)
    program = service.get_program()
    if not program or not program.allow_redemption:
        return {'valid': False, 'error': 'redemption_disabled'}

    status = service.get_status(member.id, program.id)
    balance = service.get_balance(member.id, program.id)
    if balance < points:
        return {
            'valid': False,
            'error': 'insufficient_points',
            'current_balance': balance,
            'points_requested': points,
        }

    point_value = service.points_value_for(program, service.tier_for(member, status))
    discount = (Decimal(points) * point_value).quantize(Decimal('0.01'))
    return {
        'valid': True,
        'current_balance': balance,
        'points_to_redeem': points,
        'discount_value': float(discount),
        'remaining_after': balance - points,
    }
