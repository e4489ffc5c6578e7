from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timedelta
import logging

from sqlalchemy.exc import SQLAlchemyError

from blood import urgency_priority
from errors import TransientStoreError

logger = logging.getLogger(__name__)

db = SQLAlchemy()

# Responder set of an emergency request; a row means an open response
emergency_responders = db.Table('emergency_responders',
    db.Column('emergency_id', db.Integer, db.ForeignKey('emergency_request.id'), primary_key=True),
    db.Column('user_id', db.Integer, db.ForeignKey('user.id'), primary_key=True),
    db.Column('responded_at', db.DateTime, default=datetime.utcnow)
)


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    """Donors, requesters and blood bank staff"""
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(20))  # E.164, e.g. +919876543210

    # Role: donor, requester, blood_bank, admin
    role = db.Column(db.String(20), nullable=False, default='donor')

    city = db.Column(db.String(100))
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)

    blood_group = db.Column(db.String(5))  # A+, A-, B+, B-, AB+, AB-, O+, O-
    last_donation_date = db.Column(db.DateTime)
    total_donations = db.Column(db.Integer, default=0, nullable=False)

    is_available = db.Column(db.Boolean, default=True)
    shortage_alerts_disabled = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    requests_created = db.relationship('EmergencyRequest', backref='requester', lazy='dynamic')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def can_donate_blood(self):
        """Check if donor is eligible (56 days since last donation)"""
        if not self.last_donation_date:
            return True
        return datetime.utcnow() - self.last_donation_date >= timedelta(days=56)

    @property
    def coordinates(self):
        if self.latitude is None or self.longitude is None:
            return None
        return {'latitude': self.latitude, 'longitude': self.longitude}

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'role': self.role,
            'city': self.city,
            'blood_group': self.blood_group,
            'total_donations': self.total_donations,
            'last_donation_date': _iso(self.last_donation_date),
            'is_available': self.is_available,
        }


class EmergencyRequest(db.Model):
    """Emergency blood requests"""
    id = db.Column(db.Integer, primary_key=True)
    requester_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    blood_group = db.Column(db.String(5), nullable=False)
    units = db.Column(db.Integer, nullable=False, default=1)

    # Urgency: Critical, High, Medium, Low (urgency_level 4..1)
    urgency = db.Column(db.String(20), nullable=False, default='Medium')
    urgency_level = db.Column(db.Integer, nullable=False, default=2)

    hospital = db.Column(db.String(200), nullable=False)
    location = db.Column(db.String(200))
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)

    patient_name = db.Column(db.String(100))
    contact_phone = db.Column(db.String(20))
    notes = db.Column(db.Text)

    # Status: Active, Fulfilled, Cancelled
    status = db.Column(db.String(20), nullable=False, default='Active')

    # Maintained by increment alongside the responder set; the two can drift
    responders_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    fulfilled_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)

    responders = db.relationship('User', secondary=emergency_responders, lazy='dynamic',
                                 backref=db.backref('responded_emergencies', lazy='dynamic'))
    donations = db.relationship('Donation', backref='emergency', lazy='dynamic')

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.urgency_level is None:
            self.urgency_level = urgency_priority(self.urgency)

    @property
    def coordinates(self):
        if self.latitude is None or self.longitude is None:
            return None
        return {'latitude': self.latitude, 'longitude': self.longitude}

    def to_dict(self):
        return {
            'id': self.id,
            'requester_id': self.requester_id,
            'blood_type': self.blood_group,
            'units': self.units,
            'urgency': self.urgency,
            'urgency_level': self.urgency_level,
            'hospital': self.hospital,
            'location': self.location,
            'coordinates': self.coordinates,
            'patient_name': self.patient_name,
            'contact_phone': self.contact_phone,
            'notes': self.notes,
            'status': self.status,
            'responders_count': self.responders_count,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'fulfilled_at': _iso(self.fulfilled_at),
            'cancelled_at': _iso(self.cancelled_at),
        }


class Donation(db.Model):
    """A donor's response to an emergency: pending -> completed | cancelled"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    emergency_id = db.Column(db.Integer, db.ForeignKey('emergency_request.id'))

    type = db.Column(db.String(30), nullable=False, default='emergency-response')
    status = db.Column(db.String(20), nullable=False, default='pending')

    user_name = db.Column(db.String(100))
    user_phone = db.Column(db.String(20))
    user_blood_group = db.Column(db.String(5))
    blood_type_requested = db.Column(db.String(5))
    hospital = db.Column(db.String(200))
    urgency = db.Column(db.String(20))
    units_requested = db.Column(db.Integer)

    responded_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    donor = db.relationship('User', backref=db.backref('donations', lazy='dynamic'))

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'emergency_id': self.emergency_id,
            'type': self.type,
            'status': self.status,
            'user_name': self.user_name,
            'blood_type_requested': self.blood_type_requested,
            'hospital': self.hospital,
            'urgency': self.urgency,
            'units_requested': self.units_requested,
            'responded_at': _iso(self.responded_at),
            'completed_at': _iso(self.completed_at),
            'cancelled_at': _iso(self.cancelled_at),
        }


class BloodBank(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    city = db.Column(db.String(100))
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    phone = db.Column(db.String(20))

    inventory = db.relationship('BloodInventory', backref='bank', lazy='dynamic',
                                cascade='all, delete-orphan')


class BloodInventory(db.Model):
    """Units on hand for one blood group at one bank"""
    __table_args__ = (db.UniqueConstraint('bank_id', 'blood_group'),)

    id = db.Column(db.Integer, primary_key=True)
    bank_id = db.Column(db.Integer, db.ForeignKey('blood_bank.id'), nullable=False)
    blood_group = db.Column(db.String(5), nullable=False)
    units = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Notification(db.Model):
    """In-app notifications; user_id is empty for broadcasts"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))

    # Type: emergency, shortage_alert, response
    type = db.Column(db.String(30), nullable=False)
    blood_group = db.Column(db.String(5))
    severity = db.Column(db.String(20))
    emergency_id = db.Column(db.Integer, db.ForeignKey('emergency_request.id'))
    message = db.Column(db.Text, nullable=False)
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'type': self.type,
            'blood_group': self.blood_group,
            'severity': self.severity,
            'emergency_id': self.emergency_id,
            'message': self.message,
            'read': self.read,
            'created_at': _iso(self.created_at),
        }


class ShortageAlert(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    blood_group = db.Column(db.String(5), nullable=False, index=True)
    severity = db.Column(db.String(20), nullable=False)
    days_until_shortage = db.Column(db.Integer)
    current_units = db.Column(db.Integer)
    message = db.Column(db.Text)
    active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'blood_type': self.blood_group,
            'severity': self.severity,
            'days_until_shortage': self.days_until_shortage,
            'current_units': self.current_units,
            'message': self.message,
            'active': self.active,
            'created_at': _iso(self.created_at),
        }


class CacheEntry(db.Model):
    """Persistent tier of the query cache"""
    key = db.Column(db.String(200), primary_key=True)
    data = db.Column(db.JSON)
    stored_at = db.Column(db.Float, nullable=False)


def commit(action):
    """Commit the session; store failures roll back and surface as TransientStoreError."""
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error('Error %s: %s', action, e)
        raise TransientStoreError(f'Could not complete {action}. Please retry.') from e
