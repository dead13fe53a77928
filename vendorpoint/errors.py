"""Domain errors raised by the ledger, cost, recurrence and receipt layers.

Every error carries a stable ``code`` and the HTTP status the API layer maps it
to. None of them is retried by the core.
"""


class LedgerError(Exception):
    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404


class UnknownWallet(LedgerError):
    code = "unknown_wallet"
    status_code = 404


class CurrencyMismatch(LedgerError):
    code = "currency_mismatch"
    status_code = 422


class DuplicatePosting(LedgerError):
    code = "duplicate_posting"
    status_code = 409


class InvalidAmount(LedgerError):
    code = "invalid_amount"
    status_code = 422


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"
    status_code = 409


class WalletNotEmpty(LedgerError):
    code = "wallet_not_empty"
    status_code = 409


class BalanceDrift(LedgerError):
    """Cached wallet balance no longer equals the sum of its entries."""

    code = "balance_drift"
    status_code = 500


class InvalidRecurrence(LedgerError):
    code = "invalid_recurrence"
    status_code = 422


class AlreadySettled(LedgerError):
    code = "already_settled"
    status_code = 409


class AmbiguousCustomer(LedgerError):
    code = "ambiguous_customer"
    status_code = 422


class InvalidTransition(LedgerError):
    code = "invalid_transition"
    status_code = 409


class TotalMismatch(LedgerError):
    code = "total_mismatch"
    status_code = 422
