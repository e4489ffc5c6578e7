"""Error kinds raised by the coordination services.

Each carries the HTTP status the API answers with, so routes can let them
propagate to the single error handler registered in ``app.py``.
"""


class CoordinationError(Exception):
    status_code = 500
    kind = 'error'

    def __init__(self, message=None):
        self.message = message or self.__class__.__doc__
        super().__init__(self.message)

    def to_dict(self):
        return {'message': self.message, 'error': self.kind}


class Unauthenticated(CoordinationError):
    """You must be logged in to do that."""
    status_code = 401
    kind = 'unauthenticated'


class PermissionDenied(CoordinationError):
    """You are not allowed to change this record."""
    status_code = 403
    kind = 'permission_denied'


class NotFound(CoordinationError):
    """The requested record does not exist."""
    status_code = 404
    kind = 'not_found'


class AlreadyResponded(CoordinationError):
    """You have already responded to this emergency."""
    status_code = 409
    kind = 'already_responded'


class InvalidTransition(CoordinationError):
    """The record is not in a state that allows this action."""
    status_code = 409
    kind = 'invalid_transition'


class UnknownBloodType(CoordinationError):
    """Unknown blood type."""
    status_code = 400
    kind = 'unknown_blood_type'


class TransientStoreError(CoordinationError):
    """The database is temporarily unavailable. Please retry."""
    status_code = 503
    kind = 'transient_store_error'


class NotificationDispatchError(CoordinationError):
    """Notification could not be delivered."""
    status_code = 502
    kind = 'notification_dispatch_error'


class InvalidInput(CoordinationError):
    """The request contains an invalid value."""
    status_code = 400
    kind = 'invalid_input'
