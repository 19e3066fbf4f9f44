"""Errors raised by the expense store and its collaborators."""


class ExpenseStoreError(Exception):
    """Base class for failures surfaced by the expense services."""
    kind = "error"


class Unauthenticated(ExpenseStoreError):
    """No user is signed in but the operation needs one."""
    kind = "unauthenticated"

    def __init__(self, message: str = "User is not authenticated."):
        super().__init__(message)


class ConnectivityFailure(ExpenseStoreError, ConnectionError):
    """Transient database/network failure. Callers decide whether to retry."""
    kind = "connectivity_failure"


class NotFound(ExpenseStoreError, LookupError):
    """The referenced expense does not exist."""
    kind = "not_found"


class InvalidRecord(ExpenseStoreError, ValueError):
    """A stored document does not decode into an Expense."""
    kind = "invalid_record"
