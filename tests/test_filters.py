import copy

from filters import filter_emergencies, is_fulfilled, sort_emergencies

MUMBAI = (19.0760, 72.8777)


def emergency(id, blood_type='O+', urgency='High', units=1, responders_count=0,
              created_at='2026-10-01T10:00:00', coordinates=None, **fields):
    return dict({
        'id': id,
        'blood_type': blood_type,
        'urgency': urgency,
        'units': units,
        'responders_count': responders_count,
        'hospital': 'City General Hospital',
        'location': 'Mumbai',
        'created_at': created_at,
        'coordinates': coordinates,
    }, **fields)


def ids(items):
    return [e['id'] for e in items]


def test_fulfilled_requests_are_hidden():
    items = [emergency(1, units=2, responders_count=2), emergency(2, units=2, responders_count=1)]
    assert ids(filter_emergencies(items)) == [2]


def test_missing_units_default_to_one():
    assert is_fulfilled({'responders_count': 1})
    assert not is_fulfilled({'units': 'lots'})
    assert not is_fulfilled({'units': None, 'responders_count': 'x'})


def test_blood_type_filter_is_literal():
    items = [emergency(1, blood_type='O+'), emergency(2, blood_type='O-')]
    assert ids(filter_emergencies(items, blood_type_filter='O-')) == [2]
    assert ids(filter_emergencies(items, blood_type_filter='All')) == [1, 2]


def test_search_is_trimmed_and_case_insensitive():
    items = [
        emergency(1, hospital='Lilavati Hospital'),
        emergency(2, location='Andheri West'),
        emergency(3, blood_type='AB-'),
    ]
    assert ids(filter_emergencies(items, search_query='  LILAVATI ')) == [1]
    assert ids(filter_emergencies(items, search_query='andheri')) == [2]
    assert ids(filter_emergencies(items, search_query='ab-')) == [3]
    assert len(filter_emergencies(items, search_query='   ')) == 3


def test_distance_filter_drops_far_and_unlocated():
    near = {'latitude': 19.08, 'longitude': 72.88}
    far = {'latitude': 18.5204, 'longitude': 73.8567}
    items = [emergency(1, coordinates=near), emergency(2, coordinates=far), emergency(3)]

    result = filter_emergencies(items, distance_filter=10, user_location=MUMBAI)
    assert ids(result) == [1]
    assert result[0]['calculated_distance'] < 10


def test_missing_coordinates_kept_without_distance_filter():
    items = [emergency(1), emergency(2, coordinates={'latitude': 19.08, 'longitude': 72.88})]
    result = filter_emergencies(items, user_location=MUMBAI)
    assert ids(result) == [1, 2]
    assert result[0]['calculated_distance'] is None
    assert result[1]['calculated_distance'] is not None


def test_distance_filter_needs_location():
    items = [emergency(1)]
    assert ids(filter_emergencies(items, distance_filter=5)) == [1]


def test_enrichment_marks_rare_types():
    result = filter_emergencies([emergency(1, blood_type='AB-'), emergency(2, blood_type='B+')])
    assert [e['is_rare'] for e in result] == [True, False]


def test_priority_order_with_recency_tiebreak():
    items = [
        emergency(1, urgency='Low'),
        emergency(2, urgency='Medium'),
        emergency(3, urgency='Critical'),
        emergency(4, urgency='High', created_at='2026-10-01T09:00:00'),
        emergency(5, urgency='High', created_at='2026-10-01T11:00:00'),
    ]
    assert ids(filter_emergencies(items)) == [3, 5, 4, 2, 1]
    assert ids(sort_emergencies(items)) == [3, 5, 4, 2, 1]


def test_filtering_is_pure_and_idempotent():
    items = [emergency(1, coordinates={'latitude': 19.08, 'longitude': 72.88}),
             emergency(2, units=1, responders_count=1)]
    snapshot = copy.deepcopy(items)
    params = dict(search_query='city', distance_filter=20, user_location=MUMBAI)

    first = filter_emergencies(items, **params)
    second = filter_emergencies(items, **params)
    assert first == second
    assert items == snapshot


def test_empty_input():
    assert filter_emergencies(None) == []
    assert filter_emergencies([]) == []
