"""
Event Ingestion.

Order webhooks are delivered at least once and possibly out of order.
Each delivery is:

1. registered in webhook_events keyed by X-Shopify-Webhook-Id
   (a processed or parked duplicate is acknowledged without work)
2. serialized against other events for the same order in this process
3. dispatched by topic, retrying transient persistence errors with
   exponential backoff
4. marked processed, or parked after INGESTION_MAX_ATTEMPTS so the
   webhook can still be acknowledged; parked events are replayed with
   `flask webhooks replay-parked`
"""
import logging
import threading
import time
import zlib
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from ..extensions import db
from ..engine.facts import OrderFact
from ..models.tenant import Tenant
from ..models.webhook_event import WebhookEvent, WebhookEventStatus
from ..utils.exceptions import TransientError, ReferralError, ValidationError
from .allocation_service import AllocationService
from .campaign_service import CampaignService
from .member_service import MemberService
from .order_ledger import OrderLedger
from .points_service import PointsService
from .referral_service import ReferralService

logger = logging.getLogger(__name__)

TOPICS = ('orders/create', 'orders/paid', 'orders/fulfilled', 'orders/cancelled')

LOCK_STRIPES = 64
_order_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]


@contextmanager
def order_lock(tenant_id: int, order_id: str):
    """Serialize in-process handling of events for the same order."""
    stripe = zlib.crc32(f'{tenant_id}:{order_id}'.encode()) % LOCK_STRIPES
    with _order_locks[stripe]:
        yield


def run_with_retry(fn: Callable[[], Any], max_attempts: int = 3, backoff_seconds: float = 0.2,
                   on_retry: Callable[[int, Exception], None] = None) -> Any:
    """
    Call fn, retrying OperationalError (lock timeout, dropped connection)
    with exponential backoff.

    Raises:
        TransientError: still failing after max_attempts
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except OperationalError as e:
            db.session.rollback()
            if attempt >= max_attempts:
                raise TransientError(f'Gave up after {attempt} attempts: {e.orig}', e)
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(f"Transient database error (attempt {attempt}/{max_attempts}), retrying in {delay}s: {e.orig}")
            if on_retry:
                on_retry(attempt, e)
            if delay:
                time.sleep(delay)


class IngestionService:
    def __init__(self, tenant: Tenant):
        self.tenant = tenant
        self.tenant_id = tenant.id
        self.max_attempts = current_app.config.get('INGESTION_MAX_ATTEMPTS', 3)
        self.backoff = current_app.config.get('INGESTION_RETRY_BACKOFF_SECONDS', 0.2)

    # ==================== Entry points ====================

    def ingest(self, topic: str, payload: Dict[str, Any], event_id: str = None) -> Dict[str, Any]:
        """
        Handle one webhook delivery.

        Returns a summary dict with status processed | duplicate | parked.

        Raises:
            SQLAlchemyError: the event could not even be parked; the caller
                must answer non-2xx so the platform redelivers
        """
        if topic not in TOPICS:
            raise ValueError(f'Unsupported topic {topic}')

        order = OrderFact.from_payload(payload)
        event_id = event_id or f'{topic}:{order.order_id}'

        event = self._register(topic, event_id, order.order_id, payload)
        if event is None:
            logger.info(f"Duplicate webhook {event_id} ({topic}) for order {order.order_id}, skipping")
            return {'status': 'duplicate', 'event_id': event_id}
        return self._process(event, topic, order)

    def replay(self, event: WebhookEvent) -> Dict[str, Any]:
        """Reprocess a parked event."""
        order = OrderFact.from_payload(event.payload or {})
        WebhookEvent.query.filter_by(id=event.id).update(
            {WebhookEvent.status: WebhookEventStatus.RECEIVED.value}, synchronize_session=False
        )
        db.session.commit()
        return self._process(event, event.topic, order)

    # ==================== Internals ====================

    def _register(self, topic: str, event_id: str, order_id: str, payload: dict) -> Optional[WebhookEvent]:
        """Insert the event row; None means it was already handled."""
        event = WebhookEvent(
            tenant_id=self.tenant_id,
            event_id=event_id,
            topic=topic,
            order_id=order_id,
            payload=payload,
            status=WebhookEventStatus.RECEIVED.value,
        )
        db.session.add(event)
        try:
            db.session.commit()
            return event
        except IntegrityError:
            db.session.rollback()
        existing = WebhookEvent.query.filter_by(tenant_id=self.tenant_id, event_id=event_id).first()
        if existing is None or existing.status in (WebhookEventStatus.PROCESSED.value,
                                                   WebhookEventStatus.PARKED.value):
            return None
        # Earlier delivery crashed mid-way; handle it again, every write path is idempotent
        return existing

    def _process(self, event: WebhookEvent, topic: str, order: OrderFact) -> Dict[str, Any]:
        event_pk = event.id

        def bump(attempt, error):
            WebhookEvent.query.filter_by(id=event_pk).update({
                WebhookEvent.attempts: WebhookEvent.attempts + 1,
                WebhookEvent.last_error: str(error.orig)[:1000],
            }, synchronize_session=False)
            db.session.commit()

        with order_lock(self.tenant_id, order.order_id):
            try:
                summary = run_with_retry(lambda: self._dispatch(topic, order),
                                         self.max_attempts, self.backoff, on_retry=bump)
            except TransientError as e:
                self._park(event_pk, e)
                return {'status': 'parked', 'event_id': event.event_id, 'error': e.message}

            WebhookEvent.query.filter_by(id=event_pk).update({
                WebhookEvent.status: WebhookEventStatus.PROCESSED.value,
                WebhookEvent.attempts: WebhookEvent.attempts + 1,
                WebhookEvent.processed_at: datetime.utcnow(),
            }, synchronize_session=False)
            db.session.commit()

        return {'status': 'processed', 'topic': topic, 'order_id': order.order_id, **(summary or {})}

    def _park(self, event_pk: int, error: TransientError) -> None:
        try:
            WebhookEvent.query.filter_by(id=event_pk).update({
                WebhookEvent.status: WebhookEventStatus.PARKED.value,
                WebhookEvent.attempts: WebhookEvent.attempts + 1,
                WebhookEvent.last_error: error.message[:1000],
            }, synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f"Could not park webhook event {event_pk}")
            raise
        logger.error(f"Parked webhook event {event_pk}: {error.message}")

    def _dispatch(self, topic: str, order: OrderFact) -> Dict[str, Any]:
        if topic == 'orders/create':
            return self._on_create(order)
        if topic == 'orders/paid':
            return self._on_paid(order)
        if topic == 'orders/fulfilled':
            return self._on_fulfilled(order)
        return self._on_cancelled(order)

    def _resolve(self, order: OrderFact):
        member, _ = MemberService(self.tenant_id).resolve_from_order(order)
        if member is None:
            CampaignService(self.tenant).log_no_member(order)
        return member

    def _on_create(self, order: OrderFact) -> Dict[str, Any]:
        member = self._resolve(order)
        if member is None:
            return {'member_id': None}
        if order.referral_code and not member.referred_by_id:
            self._capture_referral(member, order)
        member_order, _ = OrderLedger(self.tenant_id).record_order(member, order)
        return CampaignService(self.tenant).process_order(order, member, member_order)

    def _capture_referral(self, member, order: OrderFact) -> None:
        """Apply a referral code the customer entered at checkout."""
        try:
            ReferralService(self.tenant_id).apply_referral(
                order.referral_code,
                referred_email=member.email,
                referred_phone=member.phone,
                referred_name=member.name,
            )
        except (ReferralError, ValidationError) as e:
            logger.info(f"Referral code {order.referral_code} on order {order.order_id} not applied: {e.code}")

    def _on_paid(self, order: OrderFact) -> Dict[str, Any]:
        member = self._resolve(order)
        if member is None:
            return {'member_id': None}
        member_id = member.id

        member_order, newly_paid, newly_recorded = OrderLedger(self.tenant_id).mark_paid(member, order)
        summary = {'member_id': member_id, 'paid_ordinal': member_order.paid_ordinal}

        points = PointsService(self.tenant_id).award_order_points(member, order.order_id, order.total_price)
        summary['points'] = points.get('points', 0) if points.get('success') else 0

        summary['referral'] = ReferralService(self.tenant_id).complete_referral(
            member_id,
            order_id=order.order_id,
            order_amount=order.total_price,
            paid_ordinal=member_order.paid_ordinal,
        )

        if newly_recorded:
            # orders/create has not been seen for this order (yet)
            summary['campaigns'] = CampaignService(self.tenant).process_order(order, member, member_order)
        return summary

    def _on_fulfilled(self, order: OrderFact) -> Dict[str, Any]:
        member, _ = MemberService(self.tenant_id).resolve_from_order(order)
        OrderLedger(self.tenant_id).mark_fulfilled(order, member)
        released = AllocationService(self.tenant_id).release_delayed(order.order_id)
        return {'released': [a.id for a in released]}

    def _on_cancelled(self, order: OrderFact) -> Dict[str, Any]:
        OrderLedger(self.tenant_id).mark_cancelled(order.order_id)
        cancelled = AllocationService(self.tenant_id).cancel_pending(order.order_id)
        return {'cancelled': cancelled}


def replay_parked(tenant_id: int = None, limit: int = 100) -> Dict[str, int]:
    """Replay parked events; used by the CLI."""
    query = WebhookEvent.query.filter_by(status=WebhookEventStatus.PARKED.value)
    if tenant_id:
        query = query.filter_by(tenant_id=tenant_id)
    counts = {'processed': 0, 'parked': 0}
    for event in query.order_by(WebhookEvent.id).limit(limit).all():
        result = IngestionService(event.tenant).replay(event)
        counts['processed' if result['status'] == 'processed' else 'parked'] += 1
    return counts
