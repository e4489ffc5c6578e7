import logging
from datetime import datetime

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError

from emergencies import STATUS_ACTIVE, STATUS_FULFILLED, invalidate_emergency
from errors import InvalidTransition, NotFound, PermissionDenied, TransientStoreError
from models import db, commit, Donation, EmergencyRequest, User

logger = logging.getLogger(__name__)


def _owned_donation(donation_id, user_id):
    try:
        donation = db.session.get(Donation, donation_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        raise TransientStoreError() from e
    if donation is None:
        raise NotFound('Donation record not found')
    if donation.user_id != user_id:
        raise PermissionDenied('You can only change your own donations')
    return donation


def complete_donation(donation_id, user_id):
    """Mark a pending response as donated.

    Updates the donor's stats and fulfils the emergency once enough donors
    have responded.
    """
    donation = _owned_donation(donation_id, user_id)
    if donation.status != 'pending':
        raise InvalidTransition(f'Only pending donations can be completed (this one is {donation.status})')

    now = datetime.utcnow()
    donation.status = 'completed'
    donation.completed_at = now

    donor = db.session.get(User, user_id)
    if donor is not None:
        donor.total_donations = User.total_donations + 1
        donor.last_donation_date = now

    emergency_fulfilled = False
    emergency = db.session.get(EmergencyRequest, donation.emergency_id) if donation.emergency_id else None
    if emergency is not None and emergency.status == STATUS_ACTIVE:
        if (emergency.responders_count or 0) >= (emergency.units or 1):
            emergency.status = STATUS_FULFILLED
            emergency.fulfilled_at = now
            emergency_fulfilled = True

    commit('completing donation')
    if emergency is not None:
        invalidate_emergency(emergency.id)

    logger.info('Donation %s completed by user %s (emergency %s fulfilled: %s)',
                donation_id, user_id, donation.emergency_id, emergency_fulfilled)
    return {
        'success': True,
        'donation': donation.to_dict(),
        'emergency_fulfilled': emergency_fulfilled,
        'message': 'Thank you for saving a life!',
    }


def undo_complete_donation(donation_id, user_id):
    """Put a completed donation back to pending (marked complete by mistake)."""
    donation = _owned_donation(donation_id, user_id)
    if donation.status != 'completed':
        raise InvalidTransition('Only completed donations can be reverted')

    donation.status = 'pending'
    donation.completed_at = None

    donor = db.session.get(User, user_id)
    if donor is not None:
        donor.total_donations = case((User.total_donations > 0, User.total_donations - 1), else_=0)

    commit('reverting donation')
    logger.info('Donation %s reverted to pending by user %s', donation_id, user_id)
    return donation.to_dict()


def get_user_completion_stats(user_id):
    try:
        user = db.session.get(User, user_id)
    except SQLAlchemyError:
        logger.exception('Error fetching completion stats of user %s', user_id)
        db.session.rollback()
        user = None

    if user is None:
        return {'total_donations': 0, 'last_donation_date': None}
    return {
        'total_donations': user.total_donations or 0,
        'last_donation_date': user.last_donation_date.isoformat() if user.last_donation_date else None,
    }
