"""Find the donors to alert about a new emergency request."""
import logging

from blood import compatible_donor_types
from distance import filter_by_distance, format_distance, sort_by_distance
from models import User

logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE = 50  # km
DEFAULT_LIMIT = 20


def eligible_donors(emergency):
    """Available donors whose blood group the patient can receive.

    The requester is never matched to their own request, and donors still
    inside the donation interval are skipped.
    """
    donors = User.query.filter(
        User.id != emergency.requester_id,
        User.is_available == True,
        User.blood_group.in_(compatible_donor_types(emergency.blood_group)),
    ).order_by(User.id).all()
    return [donor for donor in donors if donor.can_donate_blood()]


def match_donors(emergency, max_distance=DEFAULT_MAX_DISTANCE, limit=DEFAULT_LIMIT):
    """Eligible donors for an emergency, closest first, at most ``limit``.

    When the request has coordinates, donors without a location or farther
    than max_distance km are dropped. A request without coordinates matches
    every eligible donor, in registration order.
    """
    candidates = [dict(donor.to_dict(), coordinates=donor.coordinates)
                  for donor in eligible_donors(emergency)]

    location = emergency.coordinates
    if location:
        candidates = sort_by_distance(candidates, location['latitude'], location['longitude'])
        if max_distance:
            candidates = filter_by_distance(candidates, max_distance)
    else:
        candidates = [dict(c, distance=None) for c in candidates]

    matches = candidates[:limit]
    for match in matches:
        match['distance_text'] = format_distance(match['distance'])

    logger.info('Matched %d donors for emergency %s (%s)',
                len(matches), emergency.id, emergency.blood_group)
    return matches
