"""Errors raised by the wash request lifecycle.

Each error carries a short machine ``code`` for API clients, a human readable
``message`` and the HTTP status the API layer answers with.
"""


class WashRequestError(Exception):
    code = "error"
    default_message = "The operation could not be completed."
    status_code = 400

    def __init__(self, message=None, *, code=None, status_code=None):
        self.message = message or self.default_message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    def as_payload(self):
        return {"detail": self.code, "message": self.message}


class ValidationError(WashRequestError):
    code = "invalid"
    default_message = "The submitted data is not valid."
    status_code = 400


class AlreadyClaimed(WashRequestError):
    code = "already-claimed"
    default_message = "This request was just taken by another provider."
    status_code = 409


class NotFound(WashRequestError):
    code = "not-found"
    default_message = "Wash request not found."
    status_code = 404


class InvalidTransition(WashRequestError):
    code = "invalid-transition"
    default_message = "This action is not possible in the request's current state."
    status_code = 409

    def __init__(self, message=None, *, current_status=None, target_status=None, **kwargs):
        self.current_status = current_status
        self.target_status = target_status
        if message is None and current_status and target_status:
            message = f"Cannot move a {current_status} request to {target_status}."
        super().__init__(message, **kwargs)


class StorageUnavailable(WashRequestError):
    code = "storage-unavailable"
    default_message = "The service is temporarily unavailable. Please try again."
    status_code = 503


def forbidden(message):
    return ValidationError(message, code="forbidden", status_code=403)
