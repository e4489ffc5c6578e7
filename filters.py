from datetime import datetime

from blood import is_rare, urgency_priority
from distance import calculate_distance, coordinates_of


def _as_int(value, default):
    # 0 and unparseable values fall back to the default as well
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed or default


def _timestamp(value):
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value).timestamp()
        except ValueError:
            return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


def is_fulfilled(emergency):
    """Derived fulfilment: enough responders for the units requested."""
    units = _as_int(emergency.get('units'), 1)
    responders = _as_int(emergency.get('responders_count'), 0)
    return responders >= units


def priority_sort_key(emergency):
    """Urgency priority descending, then most recent first."""
    priority = emergency.get('urgency_level') or urgency_priority(emergency.get('urgency'))
    return -priority, -_timestamp(emergency.get('created_at'))


def sort_emergencies(emergencies):
    return sorted(emergencies, key=priority_sort_key)


def _matches_search(emergency, query):
    for field in ('hospital', 'location', 'blood_type'):
        value = emergency.get(field)
        if value and query in value.lower():
            return True
    return False


def filter_emergencies(emergencies, blood_type_filter='All', search_query='',
                       distance_filter=None, user_location=None):
    """The list of open emergencies a donor should see, highest priority first.

    ``emergencies`` are serialized requests (see ``EmergencyRequest.to_dict``);
    the input list and its items are left untouched. ``user_location`` is a
    (lat, lng) pair.
    """
    if not emergencies:
        return []

    filtered = [e for e in emergencies if not is_fulfilled(e)]

    if blood_type_filter and blood_type_filter != 'All':
        filtered = [e for e in filtered if e.get('blood_type') == blood_type_filter]

    query = (search_query or '').strip().lower()
    if query:
        filtered = [e for e in filtered if _matches_search(e, query)]

    distances = {}
    if user_location:
        for e in filtered:
            coords = coordinates_of(e)
            if coords:
                distances[id(e)] = calculate_distance(user_location[0], user_location[1], *coords)

    if distance_filter and user_location:
        filtered = [e for e in filtered
                    if id(e) in distances and distances[id(e)] <= distance_filter]

    enriched = [
        dict(e, is_rare=is_rare(e.get('blood_type')), calculated_distance=distances.get(id(e)))
        for e in filtered
    ]
    return sort_emergencies(enriched)
