class ComplaintError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    default_message = "Complaint operation failed."

    def __init__(self, message=None, details=None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class NotFound(ComplaintError):
    status_code = 404
    default_message = "Not found."


class Forbidden(ComplaintError):
    status_code = 403
    default_message = "You do not have permission to perform this action."


class InvalidTransition(ComplaintError):
    status_code = 409
    default_message = "This action is not allowed in the complaint's current status."


class ValidationError(ComplaintError):
    status_code = 400
    default_message = "Invalid input."


class Conflict(ComplaintError):
    status_code = 409
    default_message = "Resource already exists."


class InvalidCredentials(ComplaintError):
    status_code = 401
    default_message = "Invalid credentials."


class StorageFault(ComplaintError):
    status_code = 500
    default_message = "Storage failure."
