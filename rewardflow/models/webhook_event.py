"""
Webhook delivery log used for deduplication and parking.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class WebhookEventStatus(str, Enum):
    RECEIVED = 'received'
    PROCESSED = 'processed'
    PARKED = 'parked'   # transient failures exhausted retries; replay with CLI


class WebhookEvent(db.Model):
    __tablename__ = 'webhook_events'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)

    event_id = db.Column(db.String(100), nullable=False)  # X-Shopify-Webhook-Id
    topic = db.Column(db.String(50), nullable=False)      # orders/create, orders/paid, ...
    order_id = db.Column(db.String(64))
    payload = db.Column(db.JSON)

    status = db.Column(db.String(20), default=WebhookEventStatus.RECEIVED.value, nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    last_error = db.Column(db.Text)

    received_at = db.Column(db.DateTime, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime)

    tenant = db.relationship('Tenant')

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'event_id', name='uq_webhook_event'),
        db.Index('ix_webhook_events_status', 'status'),
    )

    def __repr__(self):
        return f'<WebhookEvent {self.topic} {self.event_id} {self.status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'topic': self.topic,
            'order_id': self.order_id,
            'status': self.status,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'received_at': self.received_at.isoformat() if self.received_at else None,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None
        }
