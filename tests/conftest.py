import os

os.environ['RAKSETU_CONFIG'] = 'config.TestingConfig'

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402

from app import app as flask_app  # noqa: E402
from cache import cache_manager  # noqa: E402
from models import db, User, EmergencyRequest, BloodBank, BloodInventory  # noqa: E402
import notifications  # noqa: E402


@pytest.fixture
def app():
    with flask_app.app_context():
        db.create_all()
        cache_manager.clear()
        yield flask_app
        db.session.remove()
        db.drop_all()
        cache_manager.clear()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sent_sms(monkeypatch):
    """Capture SMS instead of calling the backend."""
    sent = []

    def fake_send(to, message):
        sent.append((to, message))
        return {'success': True, 'error': None}

    monkeypatch.setattr(notifications.sms_client, 'send', fake_send)
    return sent


@pytest.fixture
def make_user(app):
    counter = {'n': 0}

    def _make_user(blood_group='O+', role='donor', phone=None, **fields):
        counter['n'] += 1
        user = User(
            email=f'user{counter["n"]}@example.com',
            name=f'User {counter["n"]}',
            phone=phone,
            role=role,
            blood_group=blood_group,
            **fields,
        )
        user.set_password('password123')
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_emergency(app, make_user):
    requester = {}

    def _make_emergency(blood_group='O+', units=1, urgency='High', created_at=None, **fields):
        if 'requester' not in requester:
            requester['requester'] = make_user(role='requester', phone='+919800000001')
        emergency = EmergencyRequest(
            requester_id=requester['requester'].id,
            blood_group=blood_group,
            units=units,
            urgency=urgency,
            hospital=fields.pop('hospital', 'City General Hospital'),
            location=fields.pop('location', 'Mumbai'),
            contact_phone=fields.pop('contact_phone', '+919800000001'),
            created_at=created_at or datetime.utcnow(),
            **fields,
        )
        db.session.add(emergency)
        db.session.commit()
        return emergency

    return _make_emergency


@pytest.fixture
def make_bank(app):
    def _make_bank(stock, name='Red Cross Blood Bank'):
        bank = BloodBank(name=name, city='Mumbai')
        db.session.add(bank)
        db.session.flush()
        for blood_group, units in stock.items():
            db.session.add(BloodInventory(bank_id=bank.id, blood_group=blood_group, units=units))
        db.session.commit()
        return bank

    return _make_bank


@pytest.fixture
def login(client):
    def _login(user, password='password123'):
        return client.post('/api/auth/login', json={'email': user.email, 'password': password})

    return _login
