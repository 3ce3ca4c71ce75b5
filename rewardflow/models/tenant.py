"""
Tenant model for multi-tenant RewardFlow.
"""
from datetime import datetime
from ..extensions import db


class Tenant(db.Model):
    """
    Merchant shop using RewardFlow.
    Global table - shared across all tenants.
    """
    __tablename__ = 'tenants'

    id = db.Column(db.Integer, primary_key=True)
    shop_name = db.Column(db.String(255), nullable=False)

    # Shopify integration
    shopify_domain = db.Column(db.String(255), unique=True, nullable=False)
    webhook_secret = db.Column(db.String(100))

    # Access scopes granted to the app at install, e.g. "read_orders,read_customers"
    granted_scopes = db.Column(db.Text, default='read_orders')

    # Settings (JSON for flexibility)
    # Example: {"campaigns": {"multi_fire": true}}
    settings = db.Column(db.JSON, default=dict)

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    members = db.relationship('Member', backref='tenant', lazy='dynamic')
    campaign_rules = db.relationship('CampaignRule', backref='tenant', lazy='dynamic')

    def __repr__(self):
        return f'<Tenant {self.shopify_domain}>'

    @property
    def scope_set(self) -> set:
        """Granted scopes as a normalized set."""
        if not self.granted_scopes:
            return set()
        return {s.strip() for s in self.granted_scopes.split(',') if s.strip()}

    def campaign_setting(self, key: str, default=None):
        campaigns = (self.settings or {}).get('campaigns') or {}
        return campaigns.get(key, default)

    def to_dict(self):
        return {
            'id': self.id,
            'shop_name': self.shop_name,
            'shopify_domain': self.shopify_domain,
            'granted_scopes': sorted(self.scope_set),
            'settings': self.settings or {},
            'is_active': self.is_active
        }
