"""
Error taxonomy for the appointment engine.

Every error carries a stable `code` the frontend switches on, a human
readable `message`, the HTTP status the API layer should answer with, and
optional `details` merged into the JSON error body.
"""


class AppointmentError(Exception):
    code = "APPOINTMENT_ERROR"
    http_status = 400

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self):
        body = {"status": "error", "code": self.code, "message": self.message}
        body.update(self.details)
        return body


class ValidationError(AppointmentError):
    """Malformed or missing input. Never retried."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message, code=None, errors=None, details=None):
        details = dict(details or {})
        if errors:
            details["errors"] = errors
        super().__init__(message, code=code, details=details)
        self.errors = errors or []


class NotFoundError(AppointmentError):
    code = "NOT_FOUND"
    http_status = 404


class PermissionDeniedError(AppointmentError):
    code = "FORBIDDEN"
    http_status = 403


class ConflictError(AppointmentError):
    """Business rule conflict against current state; carries the conflicting record."""

    code = "CONFLICT"
    http_status = 409

    def __init__(self, message, code=None, conflict=None, details=None):
        details = dict(details or {})
        if conflict is not None:
            details["conflict"] = conflict
        super().__init__(message, code=code, details=details)
        self.conflict = conflict


class StateError(AppointmentError):
    """Attempted transition violates the lifecycle state machine."""

    code = "INVALID_STATUS_TRANSITION"
    http_status = 409

    def __init__(self, message, code=None, current_status=None, details=None):
        details = dict(details or {})
        details["current_status"] = current_status
        super().__init__(message, code=code, details=details)
        self.current_status = current_status


class InfrastructureError(AppointmentError):
    """Storage failure; the transaction was rolled back and the call is safe to retry."""

    code = "DATABASE_ERROR"
    http_status = 500
