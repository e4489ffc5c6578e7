from haversine import Unit, haversine


def calculate_distance(lat1, lon1, lat2, lon2):
    """Great-circle distance in km between two points, rounded to 0.1 km.

    Coordinates are not range checked.
    """
    km = haversine((lat1, lon1), (lat2, lon2), unit=Unit.KILOMETERS, check=False)
    return round(km, 1)


def coordinates_of(item):
    """(lat, lng) from an item's ``coordinates`` mapping, or None."""
    coords = item.get('coordinates')
    if not coords:
        return None
    lat = coords.get('latitude', coords.get('lat'))
    lng = coords.get('longitude', coords.get('lng'))
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def format_distance(distance):
    if distance is None or distance in ('', 'N/A', 'Unknown'):
        return 'N/A'
    try:
        km = float(distance)
    except (TypeError, ValueError):
        return 'N/A'

    if km < 1:
        return f'{round(km * 1000)}m'
    return f'{km:.1f}km'


def sort_by_distance(items, ref_lat, ref_lng):
    """Copies of items with a ``distance`` key, closest first.

    Items without coordinates get ``distance=None`` and go last.
    """
    result = []
    for item in items:
        coords = coordinates_of(item)
        distance = calculate_distance(ref_lat, ref_lng, *coords) if coords else None
        result.append(dict(item, distance=distance))

    result.sort(key=lambda i: (i['distance'] is None, i['distance'] or 0))
    return result


def filter_by_distance(items, max_distance):
    if not max_distance:
        return list(items)
    return [i for i in items if i.get('distance') is not None and i['distance'] <= max_distance]
