"""
Ledger Error Taxonomy

Every failure the ledger reports is one of these kinds. Errors carry a
``context`` dictionary (account id, requested amount, ...) for diagnostics;
the transport layer maps each kind to a protocol status.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    error_code = "internal_error"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def with_context(self, **context: Any) -> "LedgerError":
        """Attach diagnostic context without overwriting existing keys"""
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "detail": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class InvalidInputError(LedgerError):
    """Missing or malformed required field"""

    error_code = "invalid_input"


class InvalidAmountError(InvalidInputError):
    """Funds movement amount is not positive, or would push the balance past its maximum"""

    error_code = "invalid_amount"


class AccountNotActiveError(InvalidInputError):
    """Funds movement attempted on an inactive or closed account"""

    error_code = "account_not_active"


class NotFoundError(LedgerError):
    """Referenced account does not exist"""

    error_code = "not_found"


class InsufficientFundsError(LedgerError):
    """Withdrawal would drive the balance below zero"""

    error_code = "insufficient_funds"


class StoreUnavailableError(LedgerError):
    """Storage transaction could not be started, committed, or timed out"""

    error_code = "store_unavailable"


class ConfigurationError(LedgerError):
    """Configuration is invalid or unusable"""

    error_code = "configuration_error"
