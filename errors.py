"""
Error taxonomy shared by the HTTP layer and the services.

Every failure is raised as a LibraryError subclass and rendered by the
handlers in main.py as {"message": ...} with the matching status code.
"""
from typing import Optional


class LibraryError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


class ValidationError(LibraryError):
    status_code = 400
    message = "Invalid request"


class Unauthorized(LibraryError):
    status_code = 401
    message = "Unauthorized access!"


class Forbidden(LibraryError):
    status_code = 403
    message = "Forbidden access!"


class NotFoundError(LibraryError):
    status_code = 404
    message = "Not found"


class UserNotFound(NotFoundError):
    message = "User not found in database."


class ConflictError(LibraryError):
    status_code = 409
    message = "Conflict"


class DuplicateUser(ConflictError):
    message = "User already exists"


class DuplicateBorrow(ConflictError):
    # duplicate borrows are reported as a bad request, not a 409
    status_code = 400
    message = "You have already borrowed this book."


class AdmissionError(LibraryError):
    status_code = 403
    message = "Request rejected"


class BorrowLimitExceeded(AdmissionError):
    message = "You can't borrow more than 3 books!"


class InternalError(LibraryError):
    status_code = 500
    message = "Internal server error"


def error_body(err: LibraryError, expose_details: bool = False) -> dict:
    body = {"message": err.message}
    if expose_details and err.details:
        body["details"] = err.details
    return body
