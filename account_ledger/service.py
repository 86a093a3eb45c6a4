"""
Ledger Service Module

Stateless façade in front of the account store. Validates operation
requests, runs the deposit/withdraw protocol and reports every outcome as a
typed result or a typed LedgerError carrying the operation's context.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from .config import LedgerConfig, get_config
from .errors import InvalidAmountError, InvalidInputError, LedgerError, StoreUnavailableError
from .logging_config import get_logger, log_action
from .models import (
    Account, AccountStatus, AmountLike, BalanceSnapshot, FundsMovement, ZERO,
    format_amount, normalize_currency_code, parse_status, to_amount,
)
from .storage import AccountStore, DEFAULT_PAGE_SIZE


class LedgerService:
    """
    Operation-level contract for account records and balances.

    Holds no mutable state of its own; safe to share between threads. All
    balance changes are delegated to ``AccountStore.adjust_balance`` so the
    non-negative check runs inside the store transaction.
    """

    def __init__(self, store: AccountStore, config: Optional[LedgerConfig] = None):
        self.store = store
        self.config = config or get_config()
        self.logger = get_logger("ledger.service")

    def create_account(
        self,
        customer_id: int,
        account_type: str,
        balance: Optional[AmountLike] = None,
        currency_code: Optional[str] = None,
        status: Optional[Union[AccountStatus, str]] = None,
        caller: Optional[str] = None
    ) -> Account:
        """
        Open a new account for a customer.

        Args:
            customer_id: Owning customer; required and non-zero
            account_type: Free-form classification such as "checking"
            balance: Opening balance, zero if omitted; never negative
            currency_code: 3-letter code, the configured default if omitted
            status: Initial status, active if omitted
            caller: Authenticated caller identity, for logging only

        Returns:
            The created Account
        """
        context = {"customer_id": customer_id, "account_type": account_type}
        with self._operation("create_account", context, caller):
            if customer_id is None or isinstance(customer_id, bool) or customer_id == 0:
                raise InvalidInputError("Customer ID and account type are required")
            if not isinstance(customer_id, int):
                raise InvalidInputError("customer_id must be an integer")
            if not isinstance(account_type, str) or not account_type.strip():
                raise InvalidInputError("Customer ID and account type are required")
            if currency_code is not None:
                currency_code = normalize_currency_code(currency_code)
            if status is not None:
                status = parse_status(status)

            account = self.store.create(
                customer_id=customer_id,
                account_type=account_type,
                balance=balance,
                currency_code=currency_code or self.config.default_currency,
                status=status,
            )

        log_action(
            self.logger, "info", "Account created",
            action="create_account", resource=f"account:{account.id}", caller=caller,
            extra={
                "account_id": account.id,
                "customer_id": account.customer_id,
                "account_type": account.account_type,
                "balance": format_amount(account.balance),
                "currency_code": account.currency_code,
            }
        )
        return account

    def get_account(self, account_id: int) -> Account:
        """Get account by ID"""
        with self._operation("get_account", {"account_id": account_id}):
            return self.store.get(account_id)

    def list_accounts(self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[Account]:
        """Get one page of accounts"""
        with self._operation("list_accounts", {"limit": limit, "offset": offset}):
            return self.store.list(limit=limit, offset=offset)

    def get_balance(self, account_id: int) -> BalanceSnapshot:
        """Get the current balance and currency of an account"""
        with self._operation("get_balance", {"account_id": account_id}):
            account = self.store.get(account_id)
        return BalanceSnapshot(
            account_id=account.id,
            balance=account.balance,
            currency_code=account.currency_code,
        )

    def update_account(
        self,
        account_id: int,
        account_type: str,
        status: Union[AccountStatus, str],
        caller: Optional[str] = None
    ) -> Account:
        """Update account type and status. Balance is never touched here."""
        context = {"account_id": account_id, "account_type": account_type, "status": status}
        with self._operation("update_account", context, caller):
            if not isinstance(account_type, str) or not account_type.strip():
                raise InvalidInputError("account_type is required")
            account = self.store.update_metadata(account_id, account_type.strip(), parse_status(status))

        log_action(
            self.logger, "info", "Account updated",
            action="update_account", resource=f"account:{account_id}", caller=caller,
            extra={"account_type": account.account_type, "status": account.status.value}
        )
        return account

    def deposit(self, account_id: int, amount: AmountLike, caller: Optional[str] = None) -> FundsMovement:
        """Credit a positive amount to an account"""
        return self._move_funds("deposit", account_id, amount, caller)

    def withdraw(self, account_id: int, amount: AmountLike, caller: Optional[str] = None) -> FundsMovement:
        """
        Debit a positive amount from an account.

        No balance pre-check here; a snapshot read outside the store
        transaction can be stale. The store's InsufficientFundsError is
        surfaced unchanged.
        """
        return self._move_funds("withdraw", account_id, amount, caller)

    def _move_funds(self, action: str, account_id: int, amount: AmountLike,
                    caller: Optional[str]) -> FundsMovement:
        context = {"account_id": account_id, "amount": amount}
        with self._operation(action, context, caller):
            value = self._positive_amount(amount)
            delta = value if action == "deposit" else -value
            require_status = AccountStatus.ACTIVE if self.config.enforce_active_status else None
            account = self.store.adjust_balance(account_id, delta, require_status=require_status)

        verb = "deposited" if action == "deposit" else "withdrew"
        movement = FundsMovement(
            account_id=account.id,
            amount=value,
            balance=account.balance,
            currency_code=account.currency_code,
            message=f"Successfully {verb} {format_amount(value)}",
        )
        log_action(
            self.logger, "info", movement.message,
            action=action, resource=f"account:{account_id}", caller=caller,
            extra={
                "account_id": account_id,
                "amount": format_amount(value),
                "balance": format_amount(account.balance),
                "currency_code": account.currency_code,
            }
        )
        return movement

    @staticmethod
    def _positive_amount(amount: AmountLike) -> Decimal:
        try:
            value = to_amount(amount)
        except InvalidInputError as exc:
            raise InvalidAmountError(exc.message) from exc
        if value <= ZERO:
            raise InvalidAmountError("Amount must be positive")
        return value

    def _operation(self, action: str, context: Dict[str, Any], caller: Optional[str] = None):
        return _OperationScope(self.logger, action, context, caller)


class _OperationScope:
    """Attach operation context to escaping ledger errors and log them"""

    def __init__(self, logger, action: str, context: Dict[str, Any], caller: Optional[str]):
        self.logger = logger
        self.action = action
        self.context = context
        self.caller = caller

    def __enter__(self) -> "_OperationScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None or not isinstance(exc, LedgerError):
            return False

        exc.with_context(operation=self.action, **self.context)
        level = "error" if isinstance(exc, StoreUnavailableError) else "warning"
        log_action(
            self.logger, level, f"{self.action} failed: {exc.message}",
            action=self.action, caller=self.caller,
            resource=f"account:{self.context['account_id']}" if "account_id" in self.context else None,
            extra={"error": exc.error_code, **{k: str(v) for k, v in exc.context.items()}}
        )
        # Propagate unchanged
        return False
