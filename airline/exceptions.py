"""Errors raised by the booking ledger and translated to JSON by the views."""


class LedgerError(Exception):
    status_code = 500
    code = "error"
    default_message = "Request could not be completed."

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_payload(self):
        payload = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class InvalidRequestError(LedgerError):
    status_code = 400
    code = "invalid_request"
    default_message = "Request is missing or has malformed fields."


class AuthError(LedgerError):
    status_code = 401
    code = "auth_required"
    default_message = "Sign in to continue."


class PermissionDeniedError(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "You are not allowed to perform this action."


class NotFoundError(LedgerError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class ConflictError(LedgerError):
    status_code = 409
    code = "seat_conflict"
    default_message = "Some seats are no longer available."

    def __init__(self, conflicting_seats, message=None):
        self.conflicting_seats = list(conflicting_seats)
        super().__init__(message, conflictingSeats=self.conflicting_seats)


class CapacityError(LedgerError):
    status_code = 400
    code = "flight_full"
    default_message = "Not enough seats available on this flight."


class InvalidTransitionError(LedgerError):
    status_code = 409
    code = "invalid_transition"
    default_message = "Booking status change is not allowed."


class StorageError(LedgerError):
    status_code = 503
    code = "storage_unavailable"
    default_message = "Booking storage is temporarily unavailable. Please try again."
