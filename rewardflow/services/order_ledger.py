"""
Per-member order ledger.

"Is this the customer's first (paid) order?" is answered from the persisted
counters on Member and the ordinals frozen on MemberOrder, never from the
order webhooks happen to arrive in.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..engine.facts import OrderFact
from ..models.member import Member, MemberOrder

logger = logging.getLogger(__name__)


class OrderLedger:
    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    def get(self, member_id: int, order_id: str) -> Optional[MemberOrder]:
        return MemberOrder.query.filter_by(member_id=member_id, order_id=str(order_id)).first()

    def record_order(self, member: Member, order: OrderFact) -> Tuple[MemberOrder, bool]:
        """
        Record an order once per (member, order id) and freeze its ordinal.

        Increments Member.order_count / total_spend and inserts the MemberOrder
        in one transaction. Commits.

        Returns:
            (member_order, created)
        """
        member_id = member.id
        existing = self.get(member_id, order.order_id)
        if existing:
            return existing, False

        amount = order.total_price or Decimal('0')
        Member.query.filter(Member.id == member_id).update({
            Member.order_count: Member.order_count + 1,
            Member.total_spend: Member.total_spend + amount,
        }, synchronize_session=False)
        count, spend = db.session.query(Member.order_count, Member.total_spend).filter(
            Member.id == member_id
        ).one()

        member_order = MemberOrder(
            tenant_id=self.tenant_id,
            member_id=member_id,
            order_id=order.order_id,
            order_number=order.order_number,
            order_amount=amount,
            ordinal=count,
            cumulative_spend=spend,
        )
        db.session.add(member_order)
        try:
            db.session.commit()
        except IntegrityError:
            # Redelivered concurrently; the rollback also undoes our increment
            db.session.rollback()
            return self.get(member_id, order.order_id), False

        logger.info(f"Recorded order {order.order_id} as #{count} for member {member_id}")
        return member_order, True

    def mark_paid(self, member: Member, order: OrderFact) -> Tuple[MemberOrder, bool, bool]:
        """
        Freeze the paid ordinal the first time an order is seen paid. Commits.

        Returns:
            (member_order, newly_paid, newly_recorded)
        """
        member_id = member.id
        member_order, created = self.record_order(member, order)
        if member_order.paid_ordinal is not None:
            return member_order, False, created

        claimed = MemberOrder.query.filter(
            MemberOrder.id == member_order.id,
            MemberOrder.paid_at.is_(None),
        ).update({MemberOrder.paid_at: datetime.utcnow()}, synchronize_session=False)
        if not claimed:
            db.session.rollback()
            db.session.refresh(member_order)
            return member_order, False, created

        Member.query.filter(Member.id == member_id).update(
            {Member.paid_order_count: Member.paid_order_count + 1},
            synchronize_session=False
        )
        paid_count = db.session.query(Member.paid_order_count).filter(Member.id == member_id).scalar()
        MemberOrder.query.filter(MemberOrder.id == member_order.id).update(
            {MemberOrder.paid_ordinal: paid_count}, synchronize_session=False
        )
        db.session.commit()
        db.session.refresh(member_order)

        logger.info(f"Order {order.order_id} is paid order #{paid_count} for member {member_id}")
        return member_order, True, created

    def mark_fulfilled(self, order: OrderFact, member: Member = None) -> int:
        """
        Stamp fulfilled_at. With a member, the order is recorded first so a
        fulfillment that arrives before orders/create is not lost. Commits.
        """
        if member is not None:
            self.record_order(member, order)
        updated = MemberOrder.query.filter(
            MemberOrder.tenant_id == self.tenant_id,
            MemberOrder.order_id == str(order.order_id),
            MemberOrder.fulfilled_at.is_(None),
        ).update({MemberOrder.fulfilled_at: datetime.utcnow()}, synchronize_session=False)
        db.session.commit()
        return updated

    def is_fulfilled(self, order_id: str) -> bool:
        return db.session.query(MemberOrder.id).filter(
            MemberOrder.tenant_id == self.tenant_id,
            MemberOrder.order_id == str(order_id),
            MemberOrder.fulfilled_at.isnot(None),
        ).first() is not None

    def mark_cancelled(self, order_id: str) -> int:
        updated = MemberOrder.query.filter(
            MemberOrder.tenant_id == self.tenant_id,
            MemberOrder.order_id == str(order_id),
            MemberOrder.cancelled_at.is_(None),
        ).update({MemberOrder.cancelled_at: datetime.utcnow()}, synchronize_session=False)
        db.session.commit()
        return updated
