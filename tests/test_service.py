"""
Test suite for the ledger service

Covers the operation contract: validation before any store access, the
deposit/withdraw protocol, error kinds with operation context, and the
non-negative balance guarantee under sequential and concurrent load.
"""

import logging
import random
import pytest
from decimal import Decimal

from account_ledger.config import LedgerConfig
from account_ledger.errors import (
    AccountNotActiveError, InsufficientFundsError, InvalidAmountError,
    InvalidInputError, NotFoundError, StoreUnavailableError,
)
from account_ledger.models import AccountStatus, BalanceSnapshot, MAX_AMOUNT
from account_ledger.service import LedgerService
from account_ledger.storage import InMemoryAccountStore, SQLiteAccountStore


class TestLedgerService:
    """Single-threaded operation contract"""

    def setup_method(self):
        """Set up test fixtures"""
        self.config = LedgerConfig(database_url="memory://", default_currency="USD")
        self.store = InMemoryAccountStore()
        self.ledger = LedgerService(self.store, self.config)
        self.account = self.ledger.create_account(customer_id=7, account_type="checking")

    def test_checking_account_scenario(self):
        """Create, deposit, refused overdraft, drain to zero"""
        assert self.account.balance == Decimal("0.00")

        deposit = self.ledger.deposit(self.account.id, Decimal("150.00"))
        assert deposit.balance == Decimal("150.00")
        assert deposit.message == "Successfully deposited 150.00"

        with pytest.raises(InsufficientFundsError):
            self.ledger.withdraw(self.account.id, Decimal("200.00"))
        assert self.ledger.get_balance(self.account.id).balance == Decimal("150.00")

        withdrawal = self.ledger.withdraw(self.account.id, Decimal("150.00"))
        assert withdrawal.balance == Decimal("0.00")
        assert withdrawal.message == "Successfully withdrew 150.00"
        assert withdrawal.currency_code == "USD"

    @pytest.mark.parametrize("amount", [0, Decimal("-5"), "0.00", "-0.01", "0.004"])
    def test_non_positive_deposit_rejected(self, amount):
        """Zero and negative amounts never reach the store"""
        with pytest.raises(InvalidAmountError, match="positive"):
            self.ledger.deposit(self.account.id, amount)
        assert self.ledger.get_balance(self.account.id).balance == Decimal("0.00")

    @pytest.mark.parametrize("amount", [0, -5, None, "abc", float("nan"), True])
    def test_invalid_withdraw_amount_rejected(self, amount):
        """Non-positive or malformed withdrawal amounts are InvalidAmountError"""
        self.ledger.deposit(self.account.id, 10)
        with pytest.raises(InvalidAmountError):
            self.ledger.withdraw(self.account.id, amount)
        assert self.ledger.get_balance(self.account.id).balance == Decimal("10.00")

    def test_smallest_deposit_succeeds(self):
        """One cent is a valid deposit"""
        result = self.ledger.deposit(self.account.id, 0.01)
        assert result.balance == Decimal("0.01")
        assert result.amount == Decimal("0.01")

    def test_amount_validation_runs_before_store_lookup(self):
        """A bad amount on a missing account is an amount error"""
        with pytest.raises(InvalidAmountError):
            self.ledger.deposit(9999, 0)

    def test_deposit_then_withdraw_conserves_balance(self):
        """Depositing and withdrawing the same amount is a no-op on balance"""
        self.ledger.deposit(self.account.id, "42.10")
        before = self.ledger.get_balance(self.account.id).balance

        self.ledger.deposit(self.account.id, "19.99")
        self.ledger.withdraw(self.account.id, "19.99")

        assert self.ledger.get_balance(self.account.id).balance == before

    def test_balance_reads_are_idempotent(self):
        """Two reads with no mutation in between agree"""
        self.ledger.deposit(self.account.id, "12.00")

        first = self.ledger.get_balance(self.account.id)
        second = self.ledger.get_balance(self.account.id)

        assert first == second
        assert first == BalanceSnapshot(self.account.id, Decimal("12.00"), "USD")

    def test_random_sequences_never_go_negative(self):
        """Any mix of deposits and withdrawals keeps the balance >= 0"""
        rng = random.Random(20241019)
        expected = Decimal("0.00")

        for _ in range(300):
            amount = Decimal(rng.randint(1, 5000)) / 100
            if rng.random() < 0.5:
                expected = self.ledger.deposit(self.account.id, amount).balance
                continue
            try:
                expected = self.ledger.withdraw(self.account.id, amount).balance
            except InsufficientFundsError:
                assert amount > expected
            balance = self.ledger.get_balance(self.account.id).balance
            assert balance == expected
            assert balance >= Decimal("0.00")

    @pytest.mark.parametrize("operation", [
        lambda ledger: ledger.get_account(404),
        lambda ledger: ledger.get_balance(404),
        lambda ledger: ledger.update_account(404, "savings", "active"),
        lambda ledger: ledger.deposit(404, 10),
        lambda ledger: ledger.withdraw(404, 10),
    ])
    def test_missing_account_is_not_found(self, operation):
        """Every operation reports NotFoundError for an unknown id"""
        with pytest.raises(NotFoundError) as exc_info:
            operation(self.ledger)
        assert exc_info.value.context["account_id"] == 404

    def test_balance_lookup_names_its_operation(self):
        """A failed balance read is reported as get_balance"""
        with pytest.raises(NotFoundError) as exc_info:
            self.ledger.get_balance(404)
        assert exc_info.value.context["operation"] == "get_balance"

    def test_deposit_past_column_maximum_rejected(self):
        """A deposit that would overflow the balance column is an invalid amount"""
        account = self.ledger.create_account(customer_id=7, account_type="savings", balance=MAX_AMOUNT)

        with pytest.raises(InvalidAmountError) as exc_info:
            self.ledger.deposit(account.id, "0.01")

        assert exc_info.value.context["operation"] == "deposit"
        assert self.ledger.get_balance(account.id).balance == MAX_AMOUNT

    def test_errors_carry_operation_context(self):
        """Failures are annotated with the operation, account and amount"""
        with pytest.raises(InsufficientFundsError) as exc_info:
            self.ledger.withdraw(self.account.id, "75.50")

        context = exc_info.value.context
        assert context["operation"] == "withdraw"
        assert context["account_id"] == self.account.id
        assert context["amount"] == "75.50"
        assert context["requested"] == Decimal("75.50")

    def test_store_failures_propagate(self):
        """Store unavailability is surfaced, not retried"""
        calls = []

        def unavailable(*args, **kwargs):
            calls.append(args)
            raise StoreUnavailableError("database is locked")

        self.store._apply_delta = unavailable
        with pytest.raises(StoreUnavailableError) as exc_info:
            self.ledger.deposit(self.account.id, 5)

        assert len(calls) == 1
        assert exc_info.value.context["operation"] == "deposit"


class TestAccountManagement:
    """Create, list and update"""

    def setup_method(self):
        self.ledger = LedgerService(InMemoryAccountStore(), LedgerConfig(default_currency="CAD"))

    def test_create_uses_configured_currency(self):
        account = self.ledger.create_account(customer_id=1, account_type="savings")
        assert account.currency_code == "CAD"
        assert account.status == AccountStatus.ACTIVE

    def test_create_with_opening_balance(self):
        account = self.ledger.create_account(
            customer_id=1, account_type="savings", balance="10.005", currency_code="usd"
        )
        assert account.balance == Decimal("10.01")
        assert account.currency_code == "USD"

    @pytest.mark.parametrize("kwargs, message", [
        ({"customer_id": 0, "account_type": "checking"}, "required"),
        ({"customer_id": None, "account_type": "checking"}, "required"),
        ({"customer_id": 5, "account_type": ""}, "required"),
        ({"customer_id": 5, "account_type": None}, "required"),
        ({"customer_id": "5", "account_type": "checking"}, "integer"),
        ({"customer_id": 5, "account_type": "checking", "currency_code": "US"}, "3-letter"),
        ({"customer_id": 5, "account_type": "checking", "status": "frozen"}, "status"),
        ({"customer_id": 5, "account_type": "checking", "balance": "-1"}, "negative"),
        ({"customer_id": 5, "account_type": "x" * 51}, "50 characters"),
    ])
    def test_create_validation(self, kwargs, message):
        """Invalid create requests are rejected and nothing is stored"""
        with pytest.raises(InvalidInputError, match=message):
            self.ledger.create_account(**kwargs)
        assert self.ledger.list_accounts() == []

    def test_list_accounts(self):
        for customer in range(1, 4):
            self.ledger.create_account(customer_id=customer, account_type="checking")

        assert [a.customer_id for a in self.ledger.list_accounts()] == [1, 2, 3]
        assert [a.customer_id for a in self.ledger.list_accounts(limit=1, offset=1)] == [2]

        with pytest.raises(InvalidInputError):
            self.ledger.list_accounts(limit=-1)

    def test_update_account(self):
        account = self.ledger.create_account(customer_id=1, account_type="checking", balance=5)
        updated = self.ledger.update_account(account.id, " savings ", "INACTIVE")

        assert updated.account_type == "savings"
        assert updated.status == AccountStatus.INACTIVE
        assert updated.balance == Decimal("5.00")

    def test_update_requires_fields(self):
        account = self.ledger.create_account(customer_id=1, account_type="checking")

        with pytest.raises(InvalidInputError, match="account_type"):
            self.ledger.update_account(account.id, "", "active")
        with pytest.raises(InvalidInputError, match="status"):
            self.ledger.update_account(account.id, "checking", None)


class TestStatusPolicy:
    """Funds movement on inactive and closed accounts"""

    def _ledger(self, enforce):
        return LedgerService(InMemoryAccountStore(), LedgerConfig(enforce_active_status=enforce))

    @pytest.mark.parametrize("status", ["inactive", "closed"])
    def test_non_active_accounts_reject_funds_movement(self, status):
        ledger = self._ledger(enforce=True)
        account = ledger.create_account(customer_id=1, account_type="checking", balance=50)
        ledger.update_account(account.id, "checking", status)

        with pytest.raises(AccountNotActiveError):
            ledger.deposit(account.id, 10)
        with pytest.raises(AccountNotActiveError):
            ledger.withdraw(account.id, 10)
        assert ledger.get_balance(account.id).balance == Decimal("50.00")

    def test_reactivated_account_accepts_funds(self):
        ledger = self._ledger(enforce=True)
        account = ledger.create_account(customer_id=1, account_type="checking", status="inactive")
        ledger.update_account(account.id, "checking", "active")

        assert ledger.deposit(account.id, 10).balance == Decimal("10.00")

    def test_policy_can_be_disabled(self):
        ledger = self._ledger(enforce=False)
        account = ledger.create_account(customer_id=1, account_type="checking", status="closed")

        assert ledger.deposit(account.id, 10).balance == Decimal("10.00")
        assert ledger.withdraw(account.id, 4).balance == Decimal("6.00")

    def test_non_negative_check_still_applies_when_disabled(self):
        ledger = self._ledger(enforce=False)
        account = ledger.create_account(customer_id=1, account_type="checking", status="closed")

        with pytest.raises(InsufficientFundsError):
            ledger.withdraw(account.id, 1)


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    if request.param == "memory":
        store = InMemoryAccountStore()
    else:
        store = SQLiteAccountStore(tmp_path / "ledger.db")
    yield LedgerService(store, LedgerConfig())
    store.close()


class TestConcurrentWithdrawals:
    """Racing withdrawals against one account"""

    def test_two_withdrawals_of_sixty_from_one_hundred(self, ledger, run_concurrently):
        """Exactly one succeeds and the final balance is 40"""
        account = ledger.create_account(customer_id=1, account_type="checking", balance=100)

        results = run_concurrently(2, lambda: ledger.withdraw(account.id, 60))

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientFundsError)
        assert successes[0].balance == Decimal("40.00")
        assert ledger.get_balance(account.id).balance == Decimal("40.00")

    def test_mixed_deposits_and_withdrawals(self, ledger, run_concurrently):
        """Concurrent deposits and withdrawals balance out exactly"""
        account = ledger.create_account(customer_id=1, account_type="checking", balance=50)
        counter = iter(range(20))

        def operation():
            if next(counter) % 2 == 0:
                return ledger.deposit(account.id, 5)
            return ledger.withdraw(account.id, 5)

        results = run_concurrently(20, operation)

        assert not [r for r in results if isinstance(r, Exception)]
        assert ledger.get_balance(account.id).balance == Decimal("50.00")


class TestServiceLogging:
    """Structured log records for mutations and rejections"""

    def setup_method(self):
        self.ledger = LedgerService(InMemoryAccountStore(), LedgerConfig())
        self.logger = logging.getLogger("ledger.service")

    @pytest.fixture(autouse=True)
    def capture(self, caplog):
        caplog.set_level(logging.INFO, logger="ledger.service")
        self.logger.addHandler(caplog.handler)
        yield caplog
        self.logger.removeHandler(caplog.handler)

    def test_deposit_is_logged(self, capture):
        account = self.ledger.create_account(customer_id=1, account_type="checking")
        self.ledger.deposit(account.id, "12.5")

        record = [r for r in capture.records if getattr(r, "action", None) == "deposit"][-1]
        assert record.levelno == logging.INFO
        assert record.resource == f"account:{account.id}"
        assert record.extra["balance"] == "12.50"

    def test_rejection_is_logged_as_warning(self, capture):
        account = self.ledger.create_account(customer_id=1, account_type="checking")
        with pytest.raises(InsufficientFundsError):
            self.ledger.withdraw(account.id, 1, caller="42")

        record = [r for r in capture.records if r.levelno == logging.WARNING][-1]
        assert record.action == "withdraw"
        assert record.caller == "42"
        assert record.extra["error"] == "insufficient_funds"
