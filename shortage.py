"""Blood shortage prediction and proactive donor alerts.

Supply is the stock summed over every blood bank; demand is the number of
emergency requests raised per day over the last week, scaled by how often the
blood group is needed. The thresholds and weights are fixed heuristics, not a
fitted model.
"""
import calendar
import logging
import math
import threading
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

import inventory
from blood import compatible_donor_types
from models import db, commit, BloodInventory, EmergencyRequest, ShortageAlert, User
from notifications import create_notification

logger = logging.getLogger(__name__)

THRESHOLD_LEVELS = {
    'critical': 10,
    'low': 25,
    'warning': 50,
}

# Higher = more frequently needed
DEMAND_WEIGHTS = {
    'O+': 1.5,   # most common
    'O-': 1.4,   # universal donor
    'A+': 1.3,
    'B+': 1.2,
    'A-': 1.2,
    'AB+': 1.1,
    'B-': 1.1,
    'AB-': 1.0,
}

SEVERITY_ORDER = {'critical': 0, 'low': 1, 'warning': 2, 'stable': 3}

NO_DEMAND_DAYS = 999
WARNING_HORIZON_DAYS = 3
DEMAND_WINDOW_DAYS = 7
ALERT_WINDOW_HOURS = 24
DONOR_COOLDOWN_MONTHS = 3


def _round_half_up(value):
    return int(math.floor(value + 0.5))


def _months_before(moment, months):
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def calculate_blood_inventory():
    """Units on hand and number of stocking banks per blood group."""
    stock = {blood_type: {'total': 0, 'banks': 0} for blood_type in DEMAND_WEIGHTS}
    for row in BloodInventory.query.all():
        if row.blood_group not in stock:
            continue
        units = row.units or 0
        stock[row.blood_group]['total'] += units
        if units > 0:
            stock[row.blood_group]['banks'] += 1
    return stock


def calculate_demand_rate(blood_type, days_back=DEMAND_WINDOW_DAYS, now=None):
    """Emergency requests per day for blood_type over the last days_back days."""
    since = (now or datetime.utcnow()) - timedelta(days=days_back)
    count = db.session.query(func.count(EmergencyRequest.id)).filter(
        EmergencyRequest.blood_group == blood_type,
        EmergencyRequest.created_at >= since,
    ).scalar()
    return count / days_back


def predict_shortage(current_units, demand_per_day, demand_weight):
    """Severity tier and whole days until the next tier is reached.

    Unit thresholds are absolute and win over any demand projection.
    """
    if current_units <= THRESHOLD_LEVELS['critical']:
        return {'severity': 'critical', 'days_until_shortage': 0}

    adjusted_demand = demand_per_day * demand_weight
    if adjusted_demand <= 0:
        severity = 'low' if current_units <= THRESHOLD_LEVELS['low'] else 'stable'
        return {'severity': severity, 'days_until_shortage': NO_DEMAND_DAYS}

    days_until_critical = (current_units - THRESHOLD_LEVELS['critical']) / adjusted_demand
    days_until_low = (current_units - THRESHOLD_LEVELS['low']) / adjusted_demand

    if current_units <= THRESHOLD_LEVELS['low']:
        severity, days = 'low', days_until_critical
    elif days_until_low <= WARNING_HORIZON_DAYS:
        severity, days = 'warning', days_until_low
    else:
        severity, days = 'stable', days_until_low

    return {'severity': severity, 'days_until_shortage': max(0, _round_half_up(days))}


def analyze_blood_shortages(now=None):
    """Assessment for every blood group, most severe first.

    Returns an empty list if the store cannot be read.
    """
    logger.info('Analyzing blood inventory for potential shortages')
    try:
        stock = calculate_blood_inventory()
    except SQLAlchemyError:
        logger.exception('Error analyzing blood shortages')
        db.session.rollback()
        return []

    analysis = []
    for blood_type, levels in stock.items():
        try:
            demand_rate = calculate_demand_rate(blood_type, now=now)
        except SQLAlchemyError:
            logger.exception('Error calculating demand rate for %s', blood_type)
            db.session.rollback()
            demand_rate = 0
        prediction = predict_shortage(levels['total'], demand_rate, DEMAND_WEIGHTS[blood_type])
        analysis.append({
            'blood_type': blood_type,
            'current_units': levels['total'],
            'banks_with_stock': levels['banks'],
            'demand_rate': round(demand_rate, 1),
            'severity': prediction['severity'],
            'days_until_shortage': prediction['days_until_shortage'],
            'needs_alert': prediction['severity'] != 'stable',
        })

    analysis.sort(key=lambda a: SEVERITY_ORDER[a['severity']])
    return analysis


def get_shortage_message(blood_type, severity, days_until_shortage):
    if severity == 'critical':
        return (f'URGENT: {blood_type} blood critically low! '
                'We need immediate donations to help patients in need.')
    if severity == 'low':
        plural = '' if days_until_shortage == 1 else 's'
        return (f'ALERT: {blood_type} blood running low. Expected shortage in '
                f'{days_until_shortage} day{plural}. Please donate if you can!')
    if severity == 'warning':
        return (f'NOTICE: {blood_type} blood levels declining. '
                f'Donate now to prevent shortage in {days_until_shortage} days.')
    return f'{blood_type} blood levels stable. Thank you for your continued support!'


def get_severity_badge(severity):
    badges = {
        'critical': {'label': 'CRITICAL', 'color': 'red'},
        'low': {'label': 'LOW', 'color': 'orange'},
        'warning': {'label': 'WARNING', 'color': 'yellow'},
    }
    return badges.get(severity, {'label': 'STABLE', 'color': 'green'})


def create_shortage_alert(blood_type, severity, days_until_shortage, current_units, now=None):
    """Store an alert unless one exists for blood_type in the last 24 hours."""
    now = now or datetime.utcnow()
    recent = ShortageAlert.query.filter(
        ShortageAlert.blood_group == blood_type,
        ShortageAlert.created_at >= now - timedelta(hours=ALERT_WINDOW_HOURS),
    ).first()
    if recent is not None:
        logger.info('Alert for %s already sent in last %d hours', blood_type, ALERT_WINDOW_HOURS)
        return None

    alert = ShortageAlert(
        blood_group=blood_type,
        severity=severity,
        days_until_shortage=days_until_shortage,
        current_units=current_units,
        message=get_shortage_message(blood_type, severity, days_until_shortage),
        created_at=now,
        active=True,
    )
    db.session.add(alert)
    commit('creating shortage alert')
    logger.warning('Created shortage alert for %s (%s)', blood_type, severity)
    return alert.to_dict()


def eligible_shortage_donors(blood_type, now=None):
    """Donors who can give to blood_type and have not opted out or donated recently."""
    now = now or datetime.utcnow()
    cutoff = _months_before(now, DONOR_COOLDOWN_MONTHS)
    donors = User.query.filter(User.blood_group.in_(compatible_donor_types(blood_type))).all()
    return [
        donor for donor in donors
        if not donor.shortage_alerts_disabled
        and not (donor.last_donation_date and donor.last_donation_date > cutoff)
    ]


def notify_donors_for_shortage(blood_type, severity, now=None):
    """One notification per eligible donor; returns how many were created."""
    donors = eligible_shortage_donors(blood_type, now)
    if not donors:
        logger.info('No eligible donors for blood type %s', blood_type)
        return 0

    message = get_shortage_message(blood_type, severity, 0)
    for donor in donors:
        create_notification(donor.id, message, 'shortage_alert',
                            blood_group=blood_type, severity=severity)
    commit('notifying donors of shortage')

    logger.info('Sent %d shortage notifications for %s', len(donors), blood_type)
    return len(donors)


def run_shortage_alerts(analysis=None, now=None):
    """Alert on every non-stable group; notify donors for critical and low ones."""
    if analysis is None:
        analysis = analyze_blood_shortages(now)

    alerts = []
    notified = {}
    for assessment in analysis:
        if not assessment['needs_alert']:
            continue
        alert = create_shortage_alert(assessment['blood_type'], assessment['severity'],
                                      assessment['days_until_shortage'],
                                      assessment['current_units'], now=now)
        if alert:
            alerts.append(alert)
        if assessment['severity'] in ('critical', 'low'):
            notified[assessment['blood_type']] = notify_donors_for_shortage(
                assessment['blood_type'], assessment['severity'], now)

    return {'analysis': analysis, 'alerts': alerts, 'notified': notified}


class ShortageMonitor:
    """Re-run the shortage analysis periodically and on inventory changes.

    Use as a context manager, or call start() and stop(); stop() always
    releases the inventory subscription and the timer.
    """

    def __init__(self, app, interval=None, callback=None):
        self.app = app
        self.interval = interval or app.config.get('SHORTAGE_MONITOR_INTERVAL', 300)
        self.callback = callback
        self._timer = None
        self._unsubscribe = None
        self._run_lock = threading.Lock()
        self._stopped = threading.Event()

    def start(self):
        logger.info('Starting shortage monitoring every %s seconds', self.interval)
        self._stopped.clear()
        self._unsubscribe = inventory.subscribe(self._on_inventory_change)
        self.run_once()
        self._schedule()
        return self

    def stop(self):
        self._stopped.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        logger.info('Shortage monitoring stopped')

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def _schedule(self):
        if self._stopped.is_set():
            return
        self._timer = threading.Timer(self.interval, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self):
        self.run_once()
        self._schedule()

    def _on_inventory_change(self, bank_id, changes):
        logger.info('Blood bank inventory updated, analyzing')
        self.run_once()

    def run_once(self):
        """One analysis and alerting pass; returns the analysis or None if skipped."""
        if not self._run_lock.acquire(blocking=False):
            logger.debug('Shortage analysis already running, skipping')
            return None
        try:
            with self.app.app_context():
                result = run_shortage_alerts()
            if self.callback:
                self.callback(result['analysis'])
            return result['analysis']
        except Exception:
            logger.exception('Shortage monitoring pass failed')
            return None
        finally:
            self._run_lock.release()
