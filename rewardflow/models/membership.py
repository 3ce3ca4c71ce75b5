"""
Membership programs a campaign can enrol members into.
"""
from datetime import datetime
from ..extensions import db


class MembershipProgram(db.Model):
    __tablename__ = 'membership_programs'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)

    name = db.Column(db.String(100), nullable=False)
    validity_days = db.Column(db.Integer, default=365)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<MembershipProgram {self.name}>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'validity_days': self.validity_days,
            'is_active': self.is_active
        }


class MemberMembership(db.Model):
    __tablename__ = 'member_memberships'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    program_id = db.Column(db.Integer, db.ForeignKey('membership_programs.id'), nullable=False)

    status = db.Column(db.String(20), default='active')  # active, expired
    source = db.Column(db.String(50), default='campaign')
    source_reference = db.Column(db.String(100))  # order id that triggered it
    starts_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    program = db.relationship('MembershipProgram')

    def __repr__(self):
        return f'<MemberMembership member={self.member_id} program={self.program_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'program_id': self.program_id,
            'status': self.status,
            'starts_at': self.starts_at.isoformat() if self.starts_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None
        }
