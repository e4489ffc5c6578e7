import logging
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from blood import BLOOD_TYPES, normalize_blood_type, recipients_for_donor, urgency_priority
from cache import cache_manager, cached_query
from errors import InvalidInput, NotFound, TransientStoreError, Unauthenticated, UnknownBloodType
from filters import filter_emergencies
from matching import match_donors
from models import db, commit, EmergencyRequest
from notifications import alert_matched_donors, create_notification

logger = logging.getLogger(__name__)

STATUS_ACTIVE = 'Active'
STATUS_FULFILLED = 'Fulfilled'
STATUS_CANCELLED = 'Cancelled'

EMERGENCY_CACHE_SECONDS = 10
ACTIVE_LIST_CACHE_SECONDS = 30

# Fields a caller may set through update_emergency_request
UPDATABLE_FIELDS = {
    'blood_group', 'units', 'urgency', 'hospital', 'location', 'latitude', 'longitude',
    'patient_name', 'contact_phone', 'notes', 'status', 'fulfilled_at', 'cancelled_at',
}


def emergency_cache_key(emergency_id):
    return f'emergency_{emergency_id}'


def invalidate_emergency(emergency_id=None):
    """Drop cached copies touched by a write to an emergency request."""
    if emergency_id is not None:
        cache_manager.invalidate(emergency_cache_key(emergency_id))
    cache_manager.invalidate_prefix('active_emergencies_')


def parse_units(value):
    """Units requested as a positive whole number; missing means 1."""
    if value is None or value == '':
        return 1
    try:
        units = int(value)
    except (TypeError, ValueError):
        raise InvalidInput('Units must be a whole number') from None
    if units < 1:
        raise InvalidInput('At least one unit must be requested')
    return units


def add_emergency_request(form, user, coordinates=None):
    """Store a new Active emergency request and alert matching donors.

    ``coordinates`` is a (lat, lng) pair of where the request was raised.
    A broadcast notification is stored for everyone, plus one per matched
    donor, who is also sent an SMS. Returns the new request id.
    """
    if user is None or not user.is_authenticated:
        raise Unauthenticated('User must be authenticated to submit an emergency request')

    blood_group = normalize_blood_type(form.get('blood_type'))
    if blood_group not in BLOOD_TYPES:
        raise UnknownBloodType(f'Unknown blood type: {form.get("blood_type")!r}')

    units = parse_units(form.get('units'))
    urgency = form.get('urgency') or 'Medium'
    latitude, longitude = coordinates if coordinates else (None, None)

    emergency = EmergencyRequest(
        requester_id=user.id,
        blood_group=blood_group,
        units=units,
        urgency=urgency,
        urgency_level=urgency_priority(urgency),
        hospital=form.get('hospital') or 'Unknown hospital',
        location=form.get('location'),
        latitude=latitude,
        longitude=longitude,
        patient_name=form.get('patient_name'),
        contact_phone=form.get('contact_phone') or user.phone,
        notes=form.get('notes'),
        status=STATUS_ACTIVE,
    )
    db.session.add(emergency)
    try:
        db.session.flush()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise TransientStoreError('Could not save the emergency request. Please retry.') from e

    create_notification(
        None,
        form.get('notes') or 'No additional details provided',
        'emergency',
        blood_group=blood_group,
        severity=urgency,
        emergency_id=emergency.id,
    )

    config = current_app.config
    donors = match_donors(emergency, config.get('MATCH_MAX_DISTANCE', 50), config.get('MATCH_LIMIT', 20))
    for donor in donors:
        where = f" ({donor['distance_text']} away)" if donor['distance'] is not None else ''
        create_notification(
            donor['id'],
            f'{blood_group} blood needed urgently at {emergency.hospital}{where}',
            'emergency_match',
            blood_group=blood_group,
            severity=urgency,
            emergency_id=emergency.id,
        )
    commit('adding emergency request')
    invalidate_emergency()

    logger.info('Emergency request %s created by user %s (%s, %s), %d donors matched',
                emergency.id, user.id, blood_group, urgency, len(donors))
    alert_matched_donors(donors, emergency.to_dict(), config.get('NOTIFY_IN_BACKGROUND', True))
    return emergency.id


def get_emergency_request(emergency_id):
    """Serialized request or None; cached for a few seconds."""
    def fetch():
        emergency = db.session.get(EmergencyRequest, emergency_id)
        return emergency.to_dict() if emergency else None

    return cached_query(emergency_cache_key(emergency_id), fetch, EMERGENCY_CACHE_SECONDS)


def update_emergency_request(emergency_id, **updates):
    unknown = set(updates) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f'Cannot update fields: {", ".join(sorted(unknown))}')

    emergency = db.session.get(EmergencyRequest, emergency_id)
    if emergency is None:
        raise NotFound('Emergency request not found')

    if 'units' in updates:
        updates['units'] = parse_units(updates['units'])
    for field, value in updates.items():
        setattr(emergency, field, value)
    if 'urgency' in updates:
        emergency.urgency_level = urgency_priority(updates['urgency'])

    commit('updating emergency request')
    invalidate_emergency(emergency_id)
    return emergency


def delete_emergency_request(emergency_id):
    emergency = db.session.get(EmergencyRequest, emergency_id)
    if emergency is None:
        raise NotFound('Emergency request not found')
    db.session.delete(emergency)
    commit('deleting emergency request')
    invalidate_emergency(emergency_id)


def query_active_emergencies(max_results=50):
    return EmergencyRequest.query.filter_by(status=STATUS_ACTIVE).order_by(
        EmergencyRequest.urgency_level.desc(),
        EmergencyRequest.created_at.desc()
    ).limit(max_results).all()


def get_active_emergency_requests(max_results=50):
    def fetch():
        return [e.to_dict() for e in query_active_emergencies(max_results)]

    return cached_query(f'active_emergencies_{max_results}', fetch, ACTIVE_LIST_CACHE_SECONDS)


def get_emergencies_for_donor(user, max_distance=None):
    """Open requests the donor's blood could serve, nearest urgent ones first."""
    servable = recipients_for_donor(user.blood_group)
    active = [e for e in get_active_emergency_requests() if e['blood_type'] in servable]
    location = user.coordinates
    return filter_emergencies(
        active,
        distance_filter=max_distance,
        user_location=(location['latitude'], location['longitude']) if location else None,
    )


def get_emergency_requests_by_user(user_id):
    requests_list = EmergencyRequest.query.filter_by(requester_id=user_id)\
        .order_by(EmergencyRequest.created_at.desc()).all()
    return [e.to_dict() for e in requests_list]


def mark_emergency_fulfilled(emergency_id):
    return update_emergency_request(emergency_id, status=STATUS_FULFILLED,
                                    fulfilled_at=datetime.utcnow())


def cancel_emergency_request(emergency_id):
    return update_emergency_request(emergency_id, status=STATUS_CANCELLED,
                                    cancelled_at=datetime.utcnow())
