class LedgerError(Exception):
    """Base class for failures reported to the caller."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotAuthorizedError(LedgerError):
    """Caller is not the party allowed to perform this transition."""

    status_code = 403


class NotFoundError(LedgerError):
    status_code = 404


class InvariantViolationError(LedgerError):
    """The requested change would break a state rule, e.g. approving twice."""

    status_code = 409


class StoreUnavailableError(LedgerError):
    status_code = 503


class OperationDisabledError(LedgerError):
    """A destructive operation was called without being enabled."""

    status_code = 403
