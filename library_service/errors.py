"""
Errors raised by the catalog, ledger and directory.

Every error is recovered at the web boundary: POST handlers flash the
message and redirect, anything left over is rendered as JSON with
``status_code``.
"""


class LibraryError(Exception):
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class NotFound(LibraryError):
    """Missing user, book or borrow record."""
    status_code = 404


class Conflict(LibraryError):
    """Duplicate username/email/ISBN, duplicate active borrow, or no copies left."""
    status_code = 409


class InvalidState(LibraryError):
    """Transition not allowed from the record's current status."""
    status_code = 409


class ValidationError(LibraryError):
    status_code = 400
