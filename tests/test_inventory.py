import pytest

import inventory
from errors import InvalidInput, NotFound, UnknownBloodType


def test_inventory_lists_every_blood_type(make_bank):
    bank = make_bank({'O+': 40, 'A-': 3})
    stock = inventory.get_bank_inventory(bank.id)
    assert len(stock) == 8
    assert stock['O+'] == 40
    assert stock['A-'] == 3
    assert stock['AB-'] == 0


def test_update_inserts_and_overwrites(make_bank):
    bank = make_bank({'O+': 40})
    inventory.update_inventory(bank.id, 'O+', 12)
    inventory.update_inventory(bank.id, 'b-', '7')

    stock = inventory.get_bank_inventory(bank.id)
    assert stock['O+'] == 12
    assert stock['B-'] == 7


def test_update_validation(make_bank):
    bank = make_bank({})
    with pytest.raises(UnknownBloodType):
        inventory.update_inventory(bank.id, 'Q+', 1)
    with pytest.raises(InvalidInput):
        inventory.update_inventory(bank.id, 'O+', -1)
    with pytest.raises(NotFound):
        inventory.update_inventory(999, 'O+', 1)
    with pytest.raises(NotFound):
        inventory.get_bank_inventory(999)


def test_subscribe_and_unsubscribe(make_bank):
    bank = make_bank({})
    changes = []
    unsubscribe = inventory.subscribe(lambda *change: changes.append(change))

    inventory.update_inventory(bank.id, 'O-', 5)
    unsubscribe()
    inventory.update_inventory(bank.id, 'O-', 6)
    unsubscribe()

    assert changes == [(bank.id, {'O-': 5})]


def test_failing_listener_does_not_block_others(make_bank):
    bank = make_bank({})
    seen = []

    def broken(*change):
        raise RuntimeError('listener bug')

    remove_broken = inventory.subscribe(broken)
    remove_ok = inventory.subscribe(lambda *change: seen.append(change))
    try:
        inventory.update_inventory(bank.id, 'A+', 9)
    finally:
        remove_broken()
        remove_ok()

    assert seen == [(bank.id, {'A+': 9})]
    assert inventory.get_bank_inventory(bank.id)['A+'] == 9


def test_mixed_body_writes_nothing(make_bank):
    bank = make_bank({'A+': 40})
    changes = []
    unsubscribe = inventory.subscribe(lambda *change: changes.append(change))
    try:
        with pytest.raises(UnknownBloodType):
            inventory.update_stock(bank.id, {'A+': 3, 'ZZ': 5})
        with pytest.raises(InvalidInput):
            inventory.update_stock(bank.id, {'A+': 3, 'B+': 'plenty'})

        inventory.update_stock(bank.id, {'A+': 3, 'o-': 2, 'B+': '11'})
    finally:
        unsubscribe()

    stock = inventory.get_bank_inventory(bank.id)
    assert (stock['A+'], stock['O-'], stock['B+']) == (3, 2, 11)
    # one notification for the whole write
    assert changes == [(bank.id, {'A+': 3, 'O-': 2, 'B+': 11})]
