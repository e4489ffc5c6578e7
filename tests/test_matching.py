from datetime import datetime, timedelta

from matching import eligible_donors, match_donors

KEM = {'latitude': 19.0, 'longitude': 72.84}


def ids(matches):
    return [m['id'] for m in matches]


def test_only_compatible_donors(make_user, make_emergency):
    universal = make_user(blood_group='O-')
    same = make_user(blood_group='B-')
    make_user(blood_group='B+')
    make_user(blood_group='A-')
    emergency = make_emergency(blood_group='B-')

    assert ids(match_donors(emergency)) == [universal.id, same.id]


def test_requester_and_ineligible_donors_are_skipped(make_user, make_emergency):
    ready = make_user(blood_group='O+', last_donation_date=datetime.utcnow() - timedelta(days=90))
    make_user(blood_group='O+', last_donation_date=datetime.utcnow() - timedelta(days=20))
    make_user(blood_group='O+', is_available=False)
    emergency = make_emergency(blood_group='O+')

    donors = eligible_donors(emergency)
    assert [d.id for d in donors] == [ready.id]
    assert emergency.requester_id not in ids(match_donors(emergency))


def test_ranked_by_distance_within_radius(make_user, make_emergency):
    far = make_user(latitude=18.52, longitude=73.86)      # Pune, ~120 km
    near = make_user(latitude=19.01, longitude=72.84)
    nearer = make_user(latitude=19.0, longitude=72.841)
    make_user()  # no location
    emergency = make_emergency(**KEM)

    matches = match_donors(emergency, max_distance=50)

    assert ids(matches) == [nearer.id, near.id]
    assert matches[0]['distance'] == 0.1
    assert matches[0]['distance_text'] == '100m'
    assert far.id in ids(match_donors(emergency, max_distance=200))


def test_without_request_location_every_eligible_donor_matches(make_user, make_emergency):
    located = make_user(latitude=18.52, longitude=73.86)
    unlocated = make_user()
    emergency = make_emergency()

    matches = match_donors(emergency)
    assert ids(matches) == [located.id, unlocated.id]
    assert matches[0]['distance'] is None
    assert matches[0]['distance_text'] == 'N/A'


def test_limit(make_user, make_emergency):
    for i in range(5):
        make_user(latitude=19.0 + i * 0.01, longitude=72.84)
    emergency = make_emergency(**KEM)

    matches = match_donors(emergency, limit=3)
    assert len(matches) == 3
    assert [m['distance'] for m in matches] == sorted(m['distance'] for m in matches)
