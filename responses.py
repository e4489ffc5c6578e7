"""Donor responses to emergency requests.

A donor holds at most one open response per emergency. Membership in the
``emergency_responders`` table is the responder set, ``responders_count`` on
the request is a separately maintained counter, and each response has an
auditable ``Donation`` row in state pending, completed or cancelled.

The duplicate check in ``respond`` reads before it writes. Two concurrent
submissions can both pass it; the composite primary key on the responder set
then rejects the second insert, which is reported as AlreadyResponded.
Cancelling only decrements the counter when a membership row was removed,
so a caller outside the set cannot reopen a filled request.
"""
import logging
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from emergencies import invalidate_emergency
from errors import AlreadyResponded, NotFound, NotificationDispatchError, TransientStoreError, \
    Unauthenticated
from models import db, commit, Donation, EmergencyRequest, emergency_responders
from notifications import create_notification, send_creator_notification_sms, \
    send_responder_confirmation_sms

logger = logging.getLogger(__name__)

RESPONSE_TYPE = 'emergency-response'
OPEN_STATUSES = ('pending', 'completed')


def _membership(emergency_id, user_id):
    return (emergency_responders.c.emergency_id == emergency_id) & \
        (emergency_responders.c.user_id == user_id)


def has_responded(emergency_id, user_id):
    """Whether user_id is in the emergency's responder set.

    Store errors answer False so a flaky read never blocks a donor.
    """
    if not emergency_id or not user_id:
        return False
    try:
        row = db.session.execute(
            select(emergency_responders.c.user_id).where(_membership(emergency_id, user_id))
        ).first()
    except SQLAlchemyError:
        logger.exception('Error checking response of user %s to emergency %s', user_id, emergency_id)
        db.session.rollback()
        return False
    return row is not None


def responder_count(emergency_id):
    """Size of the responder set (0 on store errors)."""
    try:
        return db.session.execute(
            select(func.count()).select_from(emergency_responders)
            .where(emergency_responders.c.emergency_id == emergency_id)
        ).scalar_one()
    except SQLAlchemyError:
        logger.exception('Error getting responder count for emergency %s', emergency_id)
        db.session.rollback()
        return 0


def _load_emergency(emergency_id):
    try:
        emergency = db.session.get(EmergencyRequest, emergency_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        raise TransientStoreError() from e
    if emergency is None:
        raise NotFound('Emergency request not found')
    return emergency


def respond(emergency_id, user, profile=None):
    """Record user's response to an emergency; returns the Donation id.

    ``profile`` may override the name, phone and blood group used in the
    record and the SMS messages.
    """
    if user is None or not user.is_authenticated:
        raise Unauthenticated('User must be authenticated to respond to emergencies')

    if has_responded(emergency_id, user.id):
        raise AlreadyResponded('You have already responded to this emergency')

    emergency = _load_emergency(emergency_id)

    profile = profile or {}
    responder = {
        'name': profile.get('name') or user.name or 'Anonymous',
        'phone': profile.get('phone') or user.phone,
        'blood_group': profile.get('blood_group') or user.blood_group,
    }

    donation = Donation(
        user_id=user.id,
        emergency_id=emergency.id,
        type=RESPONSE_TYPE,
        status='pending',
        user_name=responder['name'],
        user_phone=responder['phone'],
        user_blood_group=responder['blood_group'],
        blood_type_requested=emergency.blood_group,
        hospital=emergency.hospital,
        urgency=emergency.urgency,
        units_requested=emergency.units,
    )
    try:
        db.session.execute(emergency_responders.insert().values(
            emergency_id=emergency.id, user_id=user.id, responded_at=datetime.utcnow()))
        emergency.responders_count = EmergencyRequest.responders_count + 1
        db.session.add(donation)
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise AlreadyResponded('You have already responded to this emergency') from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error('Error responding to emergency %s: %s', emergency_id, e)
        raise TransientStoreError('Could not record your response. Please retry.') from e

    invalidate_emergency(emergency.id)
    logger.info('Response recorded: emergency=%s user=%s donation=%s',
                emergency.id, user.id, donation.id)

    _dispatch_response_notifications(emergency.to_dict(), responder, user.id)
    return donation.id


def _check_sent(result, recipient):
    if not result['success']:
        raise NotificationDispatchError(f'SMS to {recipient} failed: {result["error"]}')


def _dispatch_response_notifications(emergency, responder, user_id):
    """SMS the responder and the requester; failures are only logged."""
    if responder['phone']:
        try:
            _check_sent(send_responder_confirmation_sms(responder['phone'], emergency), 'responder')
        except Exception:
            logger.exception('Responder confirmation failed for emergency %s', emergency['id'])
    else:
        logger.warning('No phone number for responder %s', user_id)

    if emergency.get('contact_phone'):
        try:
            _check_sent(send_creator_notification_sms(emergency['contact_phone'], responder, emergency),
                        'requester')
        except Exception:
            logger.exception('Requester notification failed for emergency %s', emergency['id'])
    else:
        logger.warning('No contact phone on emergency %s', emergency['id'])

    try:
        create_notification(
            emergency['requester_id'],
            f"{responder['name']} ({responder['blood_group'] or emergency['blood_type']}) "
            f"responded to your request at {emergency['hospital']}",
            'response',
            emergency_id=emergency['id'],
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('Could not store response notification for emergency %s', emergency['id'])


def cancel_response(emergency_id, user_id):
    """Withdraw a response; every pending record for the pair is cancelled.

    Returns the number of records moved to cancelled.
    """
    emergency = _load_emergency(emergency_id)

    now = datetime.utcnow()
    try:
        removed = db.session.execute(
            emergency_responders.delete().where(_membership(emergency.id, user_id))).rowcount
        # only members of the responder set move the counter
        if removed:
            emergency.responders_count = case(
                (EmergencyRequest.responders_count > 0, EmergencyRequest.responders_count - 1),
                else_=0,
            )
        pending = Donation.query.filter_by(user_id=user_id, emergency_id=emergency.id,
                                           type=RESPONSE_TYPE, status='pending').all()
        for donation in pending:
            donation.status = 'cancelled'
            donation.cancelled_at = now
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error('Error cancelling response to emergency %s: %s', emergency_id, e)
        raise TransientStoreError('Could not cancel your response. Please retry.') from e

    commit('cancelling response')
    invalidate_emergency(emergency.id)
    logger.info('Response cancelled: emergency=%s user=%s records=%d',
                emergency.id, user_id, len(pending))
    return len(pending)


def _open_responses(user_id):
    return Donation.query.filter(
        Donation.user_id == user_id,
        Donation.type == RESPONSE_TYPE,
        Donation.status.in_(OPEN_STATUSES),
    ).order_by(Donation.responded_at.desc())


def get_user_responses(user_id):
    """Pending and completed responses with their emergencies."""
    if not user_id:
        return []
    try:
        donations = _open_responses(user_id).all()
    except SQLAlchemyError:
        logger.exception('Error fetching responses of user %s', user_id)
        db.session.rollback()
        return []

    responses = []
    for donation in donations:
        # deleted emergencies are skipped
        if donation.emergency is None:
            continue
        responses.append({
            'donation_id': donation.id,
            'donation': donation.to_dict(),
            'emergency': donation.emergency.to_dict(),
        })
    return responses


def get_user_responded_emergency_ids(user_id):
    if not user_id:
        return []
    try:
        return [d.emergency_id for d in _open_responses(user_id)]
    except SQLAlchemyError:
        logger.exception('Error fetching responded emergency ids of user %s', user_id)
        db.session.rollback()
        return []
