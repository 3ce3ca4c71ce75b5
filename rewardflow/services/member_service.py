"""
Member resolution from order events.

Lookup is by phone first, then email, within the tenant. Unknown customers
are auto-created with their order history counters seeded from the
platform-supplied lifetime stats, so an established Shopify customer is not
treated as new the first time RewardFlow sees them.
"""
import logging
import secrets
import string
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..engine.facts import OrderFact, normalize_email, normalize_phone
from ..models.member import Member

logger = logging.getLogger(__name__)

# No 0/O/1/I to keep codes readable
REFERRAL_CODE_ALPHABET = ''.join(c for c in string.ascii_uppercase + string.digits if c not in '0O1I')
REFERRAL_CODE_LENGTH = 8


def generate_referral_code() -> str:
    return ''.join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


class MemberService:
    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    def find_member(self, email: str = None, phone: str = None) -> Optional[Member]:
        phone = normalize_phone(phone)
        email = normalize_email(email)
        if phone:
            member = Member.query.filter_by(tenant_id=self.tenant_id, phone=phone).first()
            if member:
                return member
        if email:
            return Member.query.filter_by(tenant_id=self.tenant_id, email=email).first()
        return None

    def create_member(self, email: str = None, phone: str = None, name: str = None,
                      shopify_customer_id: str = None, tags=None,
                      prior_orders: int = 0, prior_spend: Decimal = Decimal('0')) -> Member:
        """Create and commit a member; links any pending referral for their contact."""
        from .referral_service import ReferralService

        for _ in range(3):
            member = Member(
                tenant_id=self.tenant_id,
                email=normalize_email(email),
                phone=normalize_phone(phone),
                name=name,
                shopify_customer_id=shopify_customer_id,
                tags=','.join(tags) if tags else None,
                referral_code=generate_referral_code(),
                order_count=prior_orders,
                paid_order_count=prior_orders,
                total_spend=prior_spend,
            )
            db.session.add(member)
            try:
                db.session.flush()
                ReferralService(self.tenant_id).link_pending_referral(member)
                db.session.commit()
                logger.info(f"Created member {member.id} for tenant {self.tenant_id}")
                return member
            except IntegrityError:
                db.session.rollback()
                existing = self.find_member(email, phone)
                if existing:
                    return existing
                # referral code collision, try another
        raise RuntimeError('Could not allocate a unique referral code')

    def resolve_from_order(self, order: OrderFact, create: bool = True) -> Tuple[Optional[Member], bool]:
        """
        Returns:
            (member, created); member is None when the order has no contact info
        """
        if not order.customer_email and not order.customer_phone:
            return None, False

        member = self.find_member(order.customer_email, order.customer_phone)
        if member:
            self._sync_contact(member, order)
            return member, False
        if not create:
            return None, False

        prior_orders = 0
        if order.lifetime_order_count:
            prior_orders = max(order.lifetime_order_count - 1, 0)
        elif order.is_first_order is False:
            prior_orders = 1
        prior_spend = Decimal('0')
        if order.lifetime_spend is not None:
            prior_spend = max(order.lifetime_spend - (order.total_price or Decimal('0')), Decimal('0'))

        member = self.create_member(
            email=order.customer_email,
            phone=order.customer_phone,
            name=order.customer_name,
            shopify_customer_id=order.shopify_customer_id,
            tags=order.customer_tags,
            prior_orders=prior_orders,
            prior_spend=prior_spend,
        )
        return member, True

    def _sync_contact(self, member: Member, order: OrderFact) -> None:
        """Fill in missing contact fields and refresh tags from the order."""
        changed = False
        if not member.email and order.customer_email:
            member.email = order.customer_email
            changed = True
        if not member.phone and order.customer_phone:
            member.phone = order.customer_phone
            changed = True
        if not member.name and order.customer_name:
            member.name = order.customer_name
            changed = True
        if not member.shopify_customer_id and order.shopify_customer_id:
            member.shopify_customer_id = order.shopify_customer_id
            changed = True
        if order.customer_tags is not None and ','.join(order.customer_tags) != (member.tags or ''):
            member.tags = ','.join(order.customer_tags)
            changed = True
        if not changed:
            return
        try:
            db.session.commit()
        except IntegrityError:
            # Contact already belongs to another member; keep the old values
            db.session.rollback()
            logger.warning(f"Could not sync contact details for member {member.id}")
