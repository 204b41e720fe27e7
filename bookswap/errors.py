"""Workflow error taxonomy. main.py maps each class to an HTTP status."""


class BookSwapError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(BookSwapError):
    status_code = 400


class NotFound(BookSwapError):
    status_code = 404


class NotAuthorized(BookSwapError):
    status_code = 403


class PreconditionFailed(BookSwapError):
    """The row was not in the status the transition expected."""
    status_code = 409


class TransferFailed(BookSwapError):
    """Ownership transfer was rolled back; textbook and request are untouched."""
    status_code = 500
