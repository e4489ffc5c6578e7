import logging
import os

from flask import Flask, request, jsonify
from flask_login import LoginManager, login_user, logout_user, login_required, current_user

from blood import BLOOD_TYPES, normalize_blood_type
from cache import cache_manager
from errors import CoordinationError, InvalidInput, NotFound
from models import db, commit, User, EmergencyRequest, BloodBank, BloodInventory
from notifications import sms_client
import donations
import emergencies
import filters
import inventory
import responses
import shortage

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config.from_object(os.environ.get('RAKSETU_CONFIG', 'config.Config'))

db.init_app(app)
cache_manager.init_app(app)
sms_client.init_app(app)

login_manager = LoginManager()
login_manager.init_app(app)


@login_manager.user_loader
def load_user(id):
    return db.session.get(User, int(id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'message': 'You must be logged in to do that.', 'error': 'unauthenticated'}), 401


@app.errorhandler(CoordinationError)
def handle_coordination_error(error):
    return jsonify(error.to_dict()), error.status_code


def _float_arg(name):
    value = request.args.get(name)
    if value in (None, ''):
        return None
    try:
        return float(value)
    except ValueError:
        raise InvalidInput(f'{name} must be a number') from None


# ============== AUTHENTICATION ==============

@app.route('/api/auth/register', methods=['POST'])
def register():
    data = request.get_json() or {}
    if not data.get('email') or not data.get('password') or not data.get('name'):
        return jsonify({'message': 'Missing required fields'}), 400

    if User.query.filter_by(email=data['email']).first():
        return jsonify({'message': 'Email already registered'}), 400

    blood_group = normalize_blood_type(data.get('blood_group'))
    if blood_group and blood_group not in BLOOD_TYPES:
        return jsonify({'message': f'Unknown blood type: {blood_group}'}), 400

    user = User(
        email=data['email'],
        name=data['name'],
        phone=data.get('phone'),
        role=data.get('role', 'donor'),
        city=data.get('city'),
        latitude=data.get('latitude'),
        longitude=data.get('longitude'),
        blood_group=blood_group,
    )
    user.set_password(data['password'])
    db.session.add(user)
    commit('registering user')

    return jsonify(user.to_dict()), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    data = request.get_json() or {}
    user = User.query.filter_by(email=data.get('email')).first()
    if user and user.check_password(data.get('password') or ''):
        login_user(user)
        return jsonify(user.to_dict())

    return jsonify({'message': 'Invalid email or password.'}), 401


@app.route('/api/auth/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out'})


@app.route('/api/me/settings', methods=['PATCH'])
@login_required
def update_settings():
    data = request.get_json() or {}
    for field in ('phone', 'city', 'latitude', 'longitude', 'is_available', 'shortage_alerts_disabled'):
        if field in data:
            setattr(current_user, field, data[field])
    if 'blood_group' in data:
        blood_group = normalize_blood_type(data['blood_group'])
        if blood_group not in BLOOD_TYPES:
            return jsonify({'message': f'Unknown blood type: {blood_group}'}), 400
        current_user.blood_group = blood_group
    commit('updating settings')
    return jsonify(current_user.to_dict())


# ============== EMERGENCY REQUESTS ==============

@app.route('/api/emergencies')
def list_emergencies():
    lat, lng = _float_arg('lat'), _float_arg('lng')
    user_location = (lat, lng) if lat is not None and lng is not None else None

    active = emergencies.get_active_emergency_requests(request.args.get('limit', 50, type=int))
    visible = filters.filter_emergencies(
        active,
        blood_type_filter=request.args.get('blood_type', 'All'),
        search_query=request.args.get('q', ''),
        distance_filter=_float_arg('max_distance'),
        user_location=user_location,
    )
    return jsonify(visible)


@app.route('/api/emergencies', methods=['POST'])
@login_required
def new_emergency():
    data = request.get_json() or {}
    coordinates = None
    if data.get('latitude') is not None and data.get('longitude') is not None:
        try:
            coordinates = (float(data['latitude']), float(data['longitude']))
        except (TypeError, ValueError):
            raise InvalidInput('latitude and longitude must be numbers') from None

    emergency_id = emergencies.add_emergency_request(data, current_user, coordinates)
    return jsonify(emergencies.get_emergency_request(emergency_id)), 201


@app.route('/api/emergencies/<int:emergency_id>')
def view_emergency(emergency_id):
    emergency = emergencies.get_emergency_request(emergency_id)
    if emergency is None:
        raise NotFound('Emergency request not found')

    if current_user.is_authenticated:
        emergency = dict(emergency,
                         has_responded=responses.has_responded(emergency_id, current_user.id))
    return jsonify(emergency)


def _requester_only(emergency_id):
    emergency = db.session.get(EmergencyRequest, emergency_id)
    if emergency is None:
        raise NotFound('Emergency request not found')
    if emergency.requester_id != current_user.id and current_user.role != 'admin':
        return jsonify({'message': 'Unauthorized action.', 'error': 'permission_denied'}), 403
    return None


@app.route('/api/emergencies/<int:emergency_id>/fulfil', methods=['POST'])
@login_required
def fulfil_emergency(emergency_id):
    denied = _requester_only(emergency_id)
    if denied:
        return denied
    return jsonify(emergencies.mark_emergency_fulfilled(emergency_id).to_dict())


@app.route('/api/emergencies/<int:emergency_id>/cancel', methods=['POST'])
@login_required
def cancel_emergency(emergency_id):
    denied = _requester_only(emergency_id)
    if denied:
        return denied
    return jsonify(emergencies.cancel_emergency_request(emergency_id).to_dict())


# ============== RESPONSES ==============

@app.route('/api/emergencies/<int:emergency_id>/respond', methods=['POST'])
@login_required
def respond_to_emergency(emergency_id):
    profile = request.get_json(silent=True) or {}
    donation_id = responses.respond(emergency_id, current_user, profile)
    return jsonify({
        'donation_id': donation_id,
        'responder_count': responses.responder_count(emergency_id),
    }), 201


@app.route('/api/emergencies/<int:emergency_id>/respond', methods=['DELETE'])
@login_required
def cancel_response(emergency_id):
    cancelled = responses.cancel_response(emergency_id, current_user.id)
    return jsonify({'cancelled': cancelled})


@app.route('/api/emergencies/<int:emergency_id>/responders')
def emergency_responders(emergency_id):
    return jsonify({'responder_count': responses.responder_count(emergency_id)})


@app.route('/api/me/responses')
@login_required
def my_responses():
    return jsonify(responses.get_user_responses(current_user.id))


@app.route('/api/donations/<int:donation_id>/complete', methods=['POST'])
@login_required
def complete_donation(donation_id):
    return jsonify(donations.complete_donation(donation_id, current_user.id))


@app.route('/api/donations/<int:donation_id>/undo', methods=['POST'])
@login_required
def undo_donation(donation_id):
    return jsonify(donations.undo_complete_donation(donation_id, current_user.id))


@app.route('/api/me/stats')
@login_required
def my_stats():
    return jsonify(donations.get_user_completion_stats(current_user.id))


@app.route('/api/me/matches')
@login_required
def my_matches():
    return jsonify(emergencies.get_emergencies_for_donor(current_user, _float_arg('max_distance')))


# ============== INVENTORY & SHORTAGES ==============

@app.route('/api/blood-banks/<int:bank_id>/inventory')
def bank_inventory(bank_id):
    return jsonify(inventory.get_bank_inventory(bank_id))


@app.route('/api/blood-banks/<int:bank_id>/inventory', methods=['PUT'])
@login_required
def update_bank_inventory(bank_id):
    if current_user.role not in ('blood_bank', 'admin'):
        return jsonify({'message': 'This action requires a blood bank account.',
                        'error': 'permission_denied'}), 403

    inventory.update_stock(bank_id, request.get_json() or {})
    return jsonify(inventory.get_bank_inventory(bank_id))


@app.route('/api/shortages')
def shortages():
    analysis = shortage.analyze_blood_shortages()
    return jsonify([dict(a, badge=shortage.get_severity_badge(a['severity'])) for a in analysis])


@app.route('/api/shortages/alerts', methods=['POST'])
@login_required
def shortage_alerts():
    if current_user.role not in ('blood_bank', 'admin'):
        return jsonify({'message': 'This action requires a blood bank account.',
                        'error': 'permission_denied'}), 403
    return jsonify(shortage.run_shortage_alerts())


# ============== INITIALIZATION ==============

def init_db():
    """Initialize database with sample data"""
    with app.app_context():
        db.create_all()

        if User.query.first():
            return

        bank = BloodBank(name='Red Cross Blood Bank', city='Mumbai',
                         latitude=19.0760, longitude=72.8777, phone='+912212345678')
        db.session.add(bank)
        db.session.flush()

        bank_user = User(email='bloodbank@example.com', name='Red Cross Blood Bank',
                         phone='+912212345678', role='blood_bank', city='Mumbai')
        bank_user.set_password('password123')
        db.session.add(bank_user)

        sample_stock = {'A+': 40, 'A-': 12, 'B+': 55, 'B-': 8, 'AB+': 30, 'AB-': 6, 'O+': 22, 'O-': 9}
        for blood_group, units in sample_stock.items():
            db.session.add(BloodInventory(bank_id=bank.id, blood_group=blood_group, units=units))

        for i, bg in enumerate(BLOOD_TYPES):
            donor = User(
                email=f'donor{i+1}@example.com',
                name=f'Donor {bg}',
                phone=f'+9198000{i+1:05d}',
                role='donor',
                city='Mumbai',
                latitude=19.0760 + i * 0.01,
                longitude=72.8777 - i * 0.01,
                blood_group=bg,
            )
            donor.set_password('password123')
            db.session.add(donor)

        db.session.commit()
        logger.info('Database initialized with sample data')


@app.cli.command('init-db')
def init_db_command():
    init_db()


@app.cli.command('analyze-shortages')
def analyze_shortages_command():
    result = shortage.run_shortage_alerts()
    for assessment in result['analysis']:
        print(f"{assessment['blood_type']:>4}  {assessment['severity']:<8}  "
              f"{assessment['current_units']:>4} units  {assessment['demand_rate']}/day  "
              f"{assessment['days_until_shortage']} days")
    print(f"{len(result['alerts'])} new alerts")


if __name__ == '__main__':
    init_db()
    with shortage.ShortageMonitor(app):
        app.run(debug=True, port=5000, use_reloader=False)
