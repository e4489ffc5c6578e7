from errors import UnknownBloodType

BLOOD_TYPES = ['A+', 'A-', 'B+', 'B-', 'AB+', 'AB-', 'O+', 'O-']

# Recipient blood group -> donor groups it can receive from
BLOOD_COMPATIBILITY = {
    'A+': ['A+', 'A-', 'O+', 'O-'],
    'A-': ['A-', 'O-'],
    'B+': ['B+', 'B-', 'O+', 'O-'],
    'B-': ['B-', 'O-'],
    'AB+': ['A+', 'A-', 'B+', 'B-', 'AB+', 'AB-', 'O+', 'O-'],  # universal recipient
    'AB-': ['A-', 'B-', 'AB-', 'O-'],
    'O+': ['O+', 'O-'],
    'O-': ['O-'],
}

# 'O h' is the Bombay phenotype
RARE_BLOOD_TYPES = ['O h', 'AB-', 'A-', 'B-', 'O-']

URGENCY_PRIORITY = {
    'critical': 4,
    'high': 3,
    'urgent': 3,
    'medium': 2,
    'low': 1,
}

DEFAULT_URGENCY_PRIORITY = 2


def normalize_blood_type(value):
    """Canonical spelling for user-entered blood groups ('ab+ ', 'O−' ...)."""
    if value is None:
        return None
    value = str(value).strip().replace('−', '-')
    if value.lower() == 'o h':
        return 'O h'
    return value.upper()


def urgency_priority(urgency):
    if not urgency:
        return DEFAULT_URGENCY_PRIORITY
    return URGENCY_PRIORITY.get(str(urgency).strip().lower(), DEFAULT_URGENCY_PRIORITY)


def is_compatible(donor_type, recipient_type):
    """True if blood from donor_type can be given to recipient_type.

    Anything outside the eight canonical groups is never compatible.
    """
    return donor_type in BLOOD_COMPATIBILITY.get(recipient_type, [])


def compatible_donor_types(recipient_type):
    if recipient_type not in BLOOD_COMPATIBILITY:
        raise UnknownBloodType(f'Unknown blood type: {recipient_type!r}')
    return list(BLOOD_COMPATIBILITY[recipient_type])


def recipients_for_donor(donor_type):
    """Groups a donor can give to, in canonical order."""
    return [recipient for recipient in BLOOD_TYPES
            if donor_type in BLOOD_COMPATIBILITY[recipient]]


def is_rare(blood_type):
    return blood_type in RARE_BLOOD_TYPES
