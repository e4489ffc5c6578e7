"""Requests through the Flask app.

The test client shares the fixture's app context, so the logged in user
carries over between requests of one test; anonymous calls come first.
"""
import pytest

import filters


def test_register_and_login(client):
    resp = client.post('/api/auth/register', json={
        'email': 'asha@example.com', 'password': 'secret', 'name': 'Asha',
        'blood_group': 'b+', 'phone': '+919811111111'})
    assert resp.status_code == 201
    assert resp.get_json()['blood_group'] == 'B+'

    resp = client.post('/api/auth/register', json={
        'email': 'asha@example.com', 'password': 'secret', 'name': 'Asha'})
    assert resp.status_code == 400

    resp = client.post('/api/auth/login', json={'email': 'asha@example.com', 'password': 'wrong'})
    assert resp.status_code == 401

    resp = client.post('/api/auth/login', json={'email': 'asha@example.com', 'password': 'secret'})
    assert resp.status_code == 200
    assert resp.get_json()['name'] == 'Asha'


def test_register_rejects_unknown_blood_type(client):
    resp = client.post('/api/auth/register', json={
        'email': 'x@example.com', 'password': 'secret', 'name': 'X', 'blood_group': 'K+'})
    assert resp.status_code == 400


def test_list_emergencies_with_filters(client, make_emergency):
    make_emergency(blood_group='O+', urgency='Low', hospital='Lilavati Hospital')
    make_emergency(blood_group='AB-', urgency='Critical', hospital='KEM Hospital',
                   latitude=19.0, longitude=72.84)
    make_emergency(blood_group='B+', units=1, responders_count=1)

    listed = client.get('/api/emergencies').get_json()
    assert [e['hospital'] for e in listed] == ['KEM Hospital', 'Lilavati Hospital']
    assert listed[0]['is_rare'] is True

    assert len(client.get('/api/emergencies?blood_type=O%2B').get_json()) == 1
    assert len(client.get('/api/emergencies?q=kem').get_json()) == 1

    near = client.get('/api/emergencies?lat=19.0&lng=72.84&max_distance=5').get_json()
    assert [e['hospital'] for e in near] == ['KEM Hospital']
    assert near[0]['calculated_distance'] == 0


def test_anonymous_writes_are_rejected(client, make_emergency):
    emergency = make_emergency()
    resp = client.post(f'/api/emergencies/{emergency.id}/respond')
    assert resp.status_code == 401
    assert resp.get_json()['error'] == 'unauthenticated'
    assert client.post('/api/emergencies', json={'blood_type': 'O+'}).status_code == 401


def test_create_emergency(client, make_user, login):
    login(make_user(role='requester', phone='+919811111111'))

    resp = client.post('/api/emergencies', json={
        'blood_type': 'A-', 'units': 2, 'urgency': 'Critical', 'hospital': 'Ruby Hall',
        'latitude': 18.53, 'longitude': 73.87})
    assert resp.status_code == 201
    body = resp.get_json()
    assert body['blood_type'] == 'A-'
    assert body['coordinates'] == {'latitude': 18.53, 'longitude': 73.87}

    resp = client.post('/api/emergencies', json={'blood_type': 'Z'})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'unknown_blood_type'


def test_respond_then_conflict(client, make_user, make_emergency, login, sent_sms):
    emergency = make_emergency()
    login(make_user(phone='+919811111111'))

    resp = client.post(f'/api/emergencies/{emergency.id}/respond')
    assert resp.status_code == 201
    assert resp.get_json()['responder_count'] == 1

    resp = client.post(f'/api/emergencies/{emergency.id}/respond')
    assert resp.status_code == 409
    assert resp.get_json()['error'] == 'already_responded'

    assert client.get(f'/api/emergencies/{emergency.id}').get_json()['has_responded'] is True
    assert client.get(f'/api/emergencies/{emergency.id}/responders').get_json() == {'responder_count': 1}

    assert client.delete(f'/api/emergencies/{emergency.id}/respond').get_json() == {'cancelled': 1}
    assert client.get('/api/me/responses').get_json() == []


def test_complete_donation_flow(client, make_user, make_emergency, login, sent_sms):
    emergency = make_emergency(units=1)
    login(make_user())

    donation_id = client.post(f'/api/emergencies/{emergency.id}/respond').get_json()['donation_id']
    resp = client.post(f'/api/donations/{donation_id}/complete')
    assert resp.status_code == 200
    assert resp.get_json()['emergency_fulfilled'] is True

    assert client.post(f'/api/donations/{donation_id}/complete').status_code == 409
    assert client.get('/api/me/stats').get_json()['total_donations'] == 1


def test_missing_emergency_is_404(client):
    resp = client.get('/api/emergencies/9999')
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'not_found'


def test_only_requester_can_cancel(client, make_user, make_emergency, login):
    emergency = make_emergency()
    login(make_user())
    assert client.post(f'/api/emergencies/{emergency.id}/cancel').status_code == 403


def test_inventory_update_needs_blood_bank_role(client, make_user, make_bank, login):
    bank = make_bank({'O+': 30})
    assert client.get(f'/api/blood-banks/{bank.id}/inventory').get_json()['O+'] == 30

    login(make_user(role='donor'))
    assert client.put(f'/api/blood-banks/{bank.id}/inventory', json={'O+': 1}).status_code == 403

    login(make_user(role='blood_bank'))
    resp = client.put(f'/api/blood-banks/{bank.id}/inventory', json={'O+': 5, 'A-': 2})
    assert resp.status_code == 200
    assert resp.get_json()['O+'] == 5
    assert resp.get_json()['A-'] == 2

    assert client.put(f'/api/blood-banks/{bank.id}/inventory', json={'O+': -3}).status_code == 400


def test_shortages_endpoint(client, make_bank):
    make_bank({'A+': 200, 'B+': 200, 'O+': 4, 'O-': 200, 'A-': 200, 'AB+': 200,
               'B-': 200, 'AB-': 200})

    body = client.get('/api/shortages').get_json()
    assert body[0]['blood_type'] == 'O+'
    assert body[0]['badge'] == {'label': 'CRITICAL', 'color': 'red'}
    assert body[-1]['severity'] == 'stable'


def test_inventory_update_is_all_or_nothing(client, make_user, make_bank, login):
    bank = make_bank({'A+': 40})
    login(make_user(role='blood_bank'))

    resp = client.put(f'/api/blood-banks/{bank.id}/inventory', json={'A+': 3, 'ZZ': 5})
    assert resp.status_code == 400
    assert client.get(f'/api/blood-banks/{bank.id}/inventory').get_json()['A+'] == 40


def test_bad_numbers_are_client_errors(client, make_user, login):
    resp = client.get('/api/emergencies?lat=north&lng=72.8')
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'invalid_input'

    login(make_user())
    resp = client.post('/api/emergencies', json={'blood_type': 'A+', 'units': 0})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'invalid_input'


def test_my_matches(client, make_user, make_emergency, login):
    servable = make_emergency(blood_group='AB+')
    make_emergency(blood_group='O-')
    login(make_user(blood_group='B-'))

    assert [e['id'] for e in client.get('/api/me/matches').get_json()] == [servable.id]


def test_internal_value_errors_are_not_reported_as_bad_input(client, monkeypatch):
    def buggy(*args, **kwargs):
        raise ValueError('bug in the filter pipeline')

    monkeypatch.setattr(filters, 'filter_emergencies', buggy)
    # no 400 handler swallows it; under TESTING Flask re-raises
    with pytest.raises(ValueError):
        client.get('/api/emergencies')
