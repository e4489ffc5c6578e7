"""Blood bank stock levels and their change subscription."""
import logging
import threading

from blood import BLOOD_TYPES, normalize_blood_type
from errors import InvalidInput, NotFound, UnknownBloodType
from models import db, commit, BloodBank, BloodInventory

logger = logging.getLogger(__name__)

_listeners = []
_listeners_lock = threading.Lock()


def subscribe(callback):
    """Call callback(bank_id, changes) after each inventory write.

    ``changes`` maps each blood group written to its new units. Returns a
    function that removes the subscription.
    """
    with _listeners_lock:
        _listeners.append(callback)

    def unsubscribe():
        with _listeners_lock:
            if callback in _listeners:
                _listeners.remove(callback)

    return unsubscribe


def _notify(bank_id, changes):
    with _listeners_lock:
        listeners = list(_listeners)
    for callback in listeners:
        try:
            callback(bank_id, changes)
        except Exception:
            logger.exception('Inventory listener %r failed', callback)


def _get_bank(bank_id):
    bank = db.session.get(BloodBank, bank_id)
    if bank is None:
        raise NotFound('Blood bank not found')
    return bank


def get_bank_inventory(bank_id):
    bank = _get_bank(bank_id)
    stock = {blood_type: 0 for blood_type in BLOOD_TYPES}
    for row in bank.inventory:
        stock[row.blood_group] = row.units
    return stock


def _validated_levels(levels):
    if not isinstance(levels, dict):
        raise InvalidInput('Expected a mapping of blood type to units')
    changes = {}
    for blood_type, units in levels.items():
        canonical = normalize_blood_type(blood_type)
        if canonical not in BLOOD_TYPES:
            raise UnknownBloodType(f'Unknown blood type: {blood_type!r}')
        try:
            units = int(units)
        except (TypeError, ValueError):
            raise InvalidInput(f'Units for {canonical} must be a whole number') from None
        if units < 0:
            raise InvalidInput('Units cannot be negative')
        changes[canonical] = units
    return changes


def update_stock(bank_id, levels):
    """Set several blood groups of a bank at once.

    Every entry is validated before anything is written; the rows are
    committed together and listeners hear about the write once.
    """
    changes = _validated_levels(levels)
    bank = _get_bank(bank_id)
    if not changes:
        return changes

    rows = {row.blood_group: row for row in bank.inventory}
    for blood_type, units in changes.items():
        if blood_type in rows:
            rows[blood_type].units = units
        else:
            db.session.add(BloodInventory(bank_id=bank.id, blood_group=blood_type, units=units))

    commit('updating inventory')
    logger.info('Inventory of bank %s updated: %s', bank_id, changes)
    _notify(bank.id, changes)
    return changes


def update_inventory(bank_id, blood_type, units):
    """Set the units a bank holds for one blood group."""
    return update_stock(bank_id, {blood_type: units})
