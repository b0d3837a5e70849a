"""
Dispatch error taxonomy

Every error is reported only to the caller that triggered it, through its
acknowledgement.
"""


class DispatchError(Exception):
    """Base class for errors surfaced to a client acknowledgement"""

    code = "DISPATCH_ERROR"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_ack(self):
        return {'status': 'error', 'message': self.message}


class ValidationError(DispatchError):
    """Malformed coordinates or missing identifiers"""
    code = "VALIDATION_ERROR"


class NotFoundError(DispatchError):
    """Unknown, inactive or foreign emergency"""
    code = "NOT_FOUND"


class PersistenceError(DispatchError):
    """The store could not confirm a write"""
    code = "PERSISTENCE_ERROR"


class CollaboratorFailure(DispatchError):
    """AED index, triage or push failed; always degraded to a fallback"""
    code = "COLLABORATOR_FAILURE"


class ConnectionAuthError(DispatchError):
    """Connection refused at handshake"""
    code = "CONNECTION_AUTH_ERROR"

    INVALID_TOKEN = "INVALID_TOKEN"
    UNKNOWN_USER = "UNKNOWN_USER"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"
