"""
Error taxonomy shared by the orchestrators and the HTTP layer.

Every error carries a human readable message, a machine readable ``code``
and the HTTP status the routing layer answers with.
"""


class MatchmakerError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str, code: str = None, status_code: int = None):
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {'error': self.message, 'code': self.code}


class ValidationError(MatchmakerError):
    status_code = 400
    code = "validation_error"


class AdmissionError(MatchmakerError):
    status_code = 403
    code = "admission_denied"


class NotFoundError(MatchmakerError):
    status_code = 404
    code = "not_found"


class StateConflictError(MatchmakerError):
    status_code = 409
    code = "state_conflict"


class ProvisioningError(MatchmakerError):
    status_code = 502
    code = "provisioning_failed"


class ProbeError(MatchmakerError):
    status_code = 502
    code = "probe_failed"


class NotificationDeliveryError(MatchmakerError):
    code = "notification_failed"

    def __init__(self, message: str, connection_refused: bool = False):
        self.connection_refused = connection_refused
        super().__init__(message)
