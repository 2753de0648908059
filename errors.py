# errors.py
#
# Typed failures for ledger mutations.
# Any LedgerError means the mutation did not happen: no partial state is visible.


class LedgerError(RuntimeError):
    pass


class LedgerValidationError(LedgerError):
    """Precondition failed. Raised before anything is written."""


class LedgerConflictError(LedgerError):
    """The store rejected the write (concurrent change or constraint violation)."""


class LedgerNotFoundError(LedgerError):
    """Expense, settlement or group does not exist."""
