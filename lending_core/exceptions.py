"""Exception hierarchy for the lending core."""


class LendingError(Exception):
    """Base exception for all lending errors."""


class InvalidTermsError(LendingError, ValueError):
    """Raised when loan terms cannot produce a finite schedule."""


class LoanNotFoundError(LendingError):
    """Raised when a referenced loan does not exist."""


class InvalidLoanStateError(LendingError):
    """Raised when a loan is in the wrong status for the operation."""


class PersistenceError(LendingError):
    """Raised when the storage backend fails to read or write records."""
