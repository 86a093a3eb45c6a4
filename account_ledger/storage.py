"""
Account Store Module

Durable, transactional home for account records and the sole writer of
``balance``. Provides an abstract store interface and implementations for
in-memory (testing), SQLite (single node persistence) and PostgreSQL
(production).

Every balance change goes through ``adjust_balance``, which evaluates the
non-negative check and writes the new balance as one conditional update
inside one storage transaction. Two concurrent withdrawals can never both
pass the check against the same balance.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Union
from decimal import Decimal
from dataclasses import replace
from pathlib import Path
from contextlib import contextmanager
from urllib.parse import urlparse
import sqlite3
import threading
import logging

from .models import (
    Account, AccountStatus, AmountLike, CENTS, MAX_AMOUNT, ZERO,
    to_amount, normalize_currency_code, parse_status, utc_now,
)
from .errors import (
    AccountNotActiveError, ConfigurationError, InsufficientFundsError,
    InvalidAmountError, InvalidInputError, NotFoundError, StoreUnavailableError,
)


logger = logging.getLogger("ledger.storage")

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000
MAX_ACCOUNT_TYPE_LENGTH = 50
MAX_ROW_ID = 2 ** 63 - 1


class AccountStore(ABC):
    """Abstract interface for account storage backends"""

    def __init__(self, default_currency: str = "USD", timeout: float = 5.0):
        self.default_currency = normalize_currency_code(default_currency)
        self.timeout = timeout

    def create(
        self,
        customer_id: int,
        account_type: str,
        balance: Optional[AmountLike] = None,
        currency_code: Optional[str] = None,
        status: Optional[Union[AccountStatus, str]] = None
    ) -> Account:
        """
        Create and persist a new account.

        The store assigns ``id``, ``created_at`` and ``updated_at``. Balance
        defaults to zero, currency to the store default and status to active.

        Raises:
            InvalidInputError: missing customer or account type, negative balance
        """
        if customer_id is None or isinstance(customer_id, bool) or not isinstance(customer_id, int):
            raise InvalidInputError("customer_id is required", {"customer_id": customer_id})
        if abs(customer_id) > MAX_ROW_ID:
            raise InvalidInputError("customer_id is out of range", {"customer_id": customer_id})
        if not isinstance(account_type, str) or not account_type.strip():
            raise InvalidInputError("account_type is required", {"account_type": account_type})
        if len(account_type.strip()) > MAX_ACCOUNT_TYPE_LENGTH:
            raise InvalidInputError(
                f"account_type must be at most {MAX_ACCOUNT_TYPE_LENGTH} characters",
                {"account_type": account_type}
            )

        initial = ZERO if balance is None else to_amount(balance, "balance")
        if initial < ZERO:
            raise InvalidInputError("Initial balance cannot be negative", {"balance": initial})

        return self._insert(
            customer_id=customer_id,
            account_type=account_type.strip(),
            balance=initial,
            currency_code=normalize_currency_code(currency_code) if currency_code else self.default_currency,
            status=parse_status(status) if status is not None else AccountStatus.ACTIVE,
        )

    def get(self, account_id: int) -> Account:
        """Load an account, raising NotFoundError if absent"""
        self._check_id(account_id)
        return self._fetch(account_id)

    def list(self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[Account]:
        """Load one page of accounts in id order"""
        for name, value in (("limit", limit), ("offset", offset)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidInputError(f"{name} must be a non-negative integer", {name: value})
        if offset > MAX_ROW_ID:
            raise InvalidInputError(f"offset must be at most {MAX_ROW_ID}", {"offset": offset})
        return self._page(min(limit, MAX_PAGE_SIZE), offset)

    def update_metadata(
        self,
        account_id: int,
        account_type: str,
        status: AccountStatus
    ) -> Account:
        """Update account type and status; never touches balance"""
        self._check_id(account_id)
        return self._update(account_id, account_type, status)

    def adjust_balance(
        self,
        account_id: int,
        delta: AmountLike,
        require_status: Optional[AccountStatus] = None
    ) -> Account:
        """
        Atomically apply ``balance = balance + delta``.

        The transaction aborts with no visible change when the account is
        missing, when ``require_status`` is given and does not match, or
        when the new balance would fall outside ``0..MAX_AMOUNT``.

        Returns:
            The account record after the mutation
        """
        self._check_id(account_id)
        return self._apply_delta(account_id, to_amount(delta, "delta"), require_status)

    @abstractmethod
    def close(self) -> None:
        """Release every connection held by the store"""
        pass

    @abstractmethod
    def _insert(self, customer_id: int, account_type: str, balance: Decimal,
                currency_code: str, status: AccountStatus) -> Account:
        pass

    @abstractmethod
    def _fetch(self, account_id: int) -> Account:
        pass

    @abstractmethod
    def _page(self, limit: int, offset: int) -> List[Account]:
        pass

    @abstractmethod
    def _update(self, account_id: int, account_type: str, status: AccountStatus) -> Account:
        pass

    @abstractmethod
    def _apply_delta(self, account_id: int, delta: Decimal,
                     require_status: Optional[AccountStatus]) -> Account:
        pass

    def __enter__(self) -> "AccountStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @staticmethod
    def _rejection(account_id: int, delta: Decimal, balance: Decimal,
                   status: AccountStatus, require_status: Optional[AccountStatus]) -> Exception:
        """Classify why a conditional update matched no row"""
        if require_status is not None and status != require_status:
            return AccountNotActiveError(
                f"Account {account_id} is {status.value}",
                {"account_id": account_id, "status": status.value}
            )
        if balance + delta > MAX_AMOUNT:
            return InvalidAmountError(
                f"Balance would exceed the maximum of {MAX_AMOUNT}",
                {"account_id": account_id, "balance": balance, "requested": delta}
            )
        return InsufficientFundsError(
            "Insufficient funds",
            {"account_id": account_id, "balance": balance, "requested": -delta}
        )

    @staticmethod
    def _not_found(account_id: int) -> NotFoundError:
        return NotFoundError(f"Account {account_id} not found", {"account_id": account_id})

    @classmethod
    def _check_id(cls, account_id: int) -> None:
        # Ids beyond a 64-bit row id cannot exist in any backend
        if isinstance(account_id, bool) or not isinstance(account_id, int) or not 0 < account_id <= MAX_ROW_ID:
            raise cls._not_found(account_id)


class InMemoryAccountStore(AccountStore):
    """In-memory store for testing; the store lock is the transaction"""

    def __init__(self, default_currency: str = "USD", timeout: float = 5.0):
        super().__init__(default_currency, timeout)
        self._records: Dict[int, Account] = {}
        self._next_id = 1
        self._lock = threading.RLock()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise StoreUnavailableError("Timed out waiting for the account store")
        try:
            yield
        finally:
            self._lock.release()

    def _insert(self, customer_id, account_type, balance, currency_code, status) -> Account:
        now = utc_now()
        with self._transaction():
            account = Account(
                id=self._next_id,
                customer_id=customer_id,
                account_type=account_type,
                balance=balance,
                currency_code=currency_code,
                status=status,
                created_at=now,
                updated_at=now,
            )
            self._records[account.id] = account
            self._next_id += 1
            # Copies prevent external mutation
            return replace(account)

    def _fetch(self, account_id: int) -> Account:
        with self._transaction():
            account = self._records.get(account_id)
            if account is None:
                raise self._not_found(account_id)
            return replace(account)

    def _page(self, limit: int, offset: int) -> List[Account]:
        with self._transaction():
            ids = sorted(self._records)[offset:offset + limit]
            return [replace(self._records[i]) for i in ids]

    def _update(self, account_id: int, account_type: str, status: AccountStatus) -> Account:
        with self._transaction():
            account = self._records.get(account_id)
            if account is None:
                raise self._not_found(account_id)
            updated = replace(
                account,
                account_type=account_type,
                status=status,
                updated_at=max(utc_now(), account.created_at),
            )
            self._records[account_id] = updated
            return replace(updated)

    def _apply_delta(self, account_id, delta, require_status) -> Account:
        with self._transaction():
            account = self._records.get(account_id)
            if account is None:
                raise self._not_found(account_id)

            new_balance = account.balance + delta
            if ((require_status is not None and account.status != require_status)
                    or not ZERO <= new_balance <= MAX_AMOUNT):
                raise self._rejection(account_id, delta, account.balance, account.status, require_status)

            updated = replace(
                account,
                balance=new_balance.quantize(CENTS),
                updated_at=max(utc_now(), account.created_at),
            )
            self._records[account_id] = updated
            return replace(updated)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


_SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        customer_id BIGINT NOT NULL,
        account_type VARCHAR(50) NOT NULL,
        balance_cents INTEGER NOT NULL DEFAULT 0 CHECK (balance_cents >= 0),
        currency_code VARCHAR(3) NOT NULL DEFAULT 'USD',
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
"""

_SQLITE_COLUMNS = "id, customer_id, account_type, balance_cents, currency_code, status, created_at, updated_at"


def _to_cents(amount: Decimal) -> int:
    return int(amount.quantize(CENTS) * 100)


def _from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENTS)


class SQLiteAccountStore(AccountStore):
    """
    SQLite store for single-node persistence.

    Balances are kept as integer cents so the conditional update is exact.
    Write transactions use BEGIN IMMEDIATE, which takes the database write
    lock up front; concurrent writers wait up to ``timeout`` seconds.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:",
                 default_currency: str = "USD", timeout: float = 5.0):
        super().__init__(default_currency, timeout)
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._shared: Optional[sqlite3.Connection] = None

        try:
            if self.db_path == ":memory:":
                # Every connection to :memory: is a separate database
                self._shared = self._connect()
            else:
                conn = self._connect()
                try:
                    conn.execute("PRAGMA journal_mode = WAL")
                finally:
                    conn.close()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open SQLite database {self.db_path}: {exc}") from exc

        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are begun and ended explicitly
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._transaction(write=True) as conn:
            conn.execute(_SQLITE_SCHEMA)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_accounts_customer_id ON accounts(customer_id)")

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Scoped connection + transaction: commit on success, rollback otherwise"""
        conn = None
        locked = False
        try:
            if self._shared is not None:
                locked = self._lock.acquire(timeout=self.timeout)
                if not locked:
                    raise StoreUnavailableError("Timed out waiting for the account store")
                conn = self._shared
            else:
                conn = self._connect()

            try:
                conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.rollback()
                raise
        except sqlite3.Error as exc:
            logger.error("SQLite transaction failed: %s", exc)
            raise StoreUnavailableError(f"SQLite store unavailable: {exc}") from exc
        finally:
            if locked:
                self._lock.release()
            elif conn is not None and conn is not self._shared:
                conn.close()

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        data = dict(row)
        data["balance"] = _from_cents(data.pop("balance_cents"))
        return Account.from_dict(data)

    def _select(self, conn: sqlite3.Connection, account_id: int) -> Optional[sqlite3.Row]:
        return conn.execute(
            f"SELECT {_SQLITE_COLUMNS} FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()

    def _insert(self, customer_id, account_type, balance, currency_code, status) -> Account:
        now = utc_now().isoformat()
        with self._transaction(write=True) as conn:
            cursor = conn.execute("""
                INSERT INTO accounts (customer_id, account_type, balance_cents,
                                      currency_code, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (customer_id, account_type, _to_cents(balance), currency_code, status.value, now, now))
            return self._row_to_account(self._select(conn, cursor.lastrowid))

    def _fetch(self, account_id: int) -> Account:
        with self._transaction() as conn:
            row = self._select(conn, account_id)
        if row is None:
            raise self._not_found(account_id)
        return self._row_to_account(row)

    def _page(self, limit: int, offset: int) -> List[Account]:
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_SQLITE_COLUMNS} FROM accounts ORDER BY id LIMIT ? OFFSET ?",
                (limit, offset)
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def _update(self, account_id: int, account_type: str, status: AccountStatus) -> Account:
        with self._transaction(write=True) as conn:
            cursor = conn.execute("""
                UPDATE accounts
                SET account_type = ?, status = ?, updated_at = MAX(?, created_at)
                WHERE id = ?
            """, (account_type, status.value, utc_now().isoformat(), account_id))
            if cursor.rowcount == 0:
                raise self._not_found(account_id)
            return self._row_to_account(self._select(conn, account_id))

    def _apply_delta(self, account_id, delta, require_status) -> Account:
        cents = _to_cents(delta)
        query = """
            UPDATE accounts
            SET balance_cents = balance_cents + ?, updated_at = MAX(?, created_at)
            WHERE id = ? AND balance_cents + ? BETWEEN 0 AND ?
        """
        params: List[Any] = [cents, utc_now().isoformat(), account_id, cents, _to_cents(MAX_AMOUNT)]
        if require_status is not None:
            query += " AND status = ?"
            params.append(require_status.value)

        with self._transaction(write=True) as conn:
            cursor = conn.execute(query, params)
            row = self._select(conn, account_id)
            if row is None:
                raise self._not_found(account_id)
            account = self._row_to_account(row)
            if cursor.rowcount == 0:
                raise self._rejection(account_id, delta, account.balance, account.status, require_status)
            return account

    def close(self) -> None:
        """Close the shared connection, if any"""
        with self._lock:
            if self._shared is not None:
                self._shared.close()
                self._shared = None


_POSTGRES_SCHEMA = """
    CREATE TABLE IF NOT EXISTS accounts (
        id BIGSERIAL PRIMARY KEY,
        customer_id BIGINT NOT NULL,
        account_type VARCHAR(50) NOT NULL,
        balance DECIMAL(15,2) NOT NULL DEFAULT 0.00 CHECK (balance >= 0),
        currency_code VARCHAR(3) NOT NULL DEFAULT 'USD',
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
"""

_POSTGRES_COLUMNS = "id, customer_id, account_type, balance, currency_code, status, created_at, updated_at"


class PostgreSQLAccountStore(AccountStore):
    """
    PostgreSQL store with a threaded connection pool.

    The conditional UPDATE takes the row lock; a concurrent update of the
    same row waits and then re-checks its WHERE clause against the
    committed balance.
    """

    def __init__(self, connection_string: str, default_currency: str = "USD",
                 timeout: float = 5.0, pool_size: int = 5):
        super().__init__(default_currency, timeout)
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        pool_size = max(pool_size, 1)
        # One slot per pooled connection; getconn() itself never waits
        self._slots = threading.BoundedSemaphore(pool_size)
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                1, pool_size, connection_string,
                connect_timeout=max(int(timeout), 1),
                options=f"-c statement_timeout={int(timeout * 1000)} -c lock_timeout={int(timeout * 1000)}",
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
        except psycopg2.Error as exc:
            raise StoreUnavailableError(f"Cannot connect to PostgreSQL: {exc}") from exc

        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._transaction() as cursor:
            cursor.execute(_POSTGRES_SCHEMA)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_accounts_customer_id ON accounts(customer_id)")

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Borrow a pooled connection for one transaction and always return it"""
        if not self._slots.acquire(timeout=self.timeout):
            raise StoreUnavailableError("Timed out waiting for a PostgreSQL connection")
        conn = None
        try:
            conn = self._pool.getconn()
            try:
                with conn.cursor() as cursor:
                    yield cursor
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
        except (self.psycopg2.Error, self.psycopg2.pool.PoolError) as exc:
            logger.error("PostgreSQL transaction failed: %s", exc)
            raise StoreUnavailableError(f"PostgreSQL store unavailable: {exc}") from exc
        finally:
            if conn is not None:
                self._pool.putconn(conn, close=bool(conn.closed))
            self._slots.release()

    def _insert(self, customer_id, account_type, balance, currency_code, status) -> Account:
        with self._transaction() as cursor:
            cursor.execute(f"""
                INSERT INTO accounts (customer_id, account_type, balance, currency_code, status)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING {_POSTGRES_COLUMNS}
            """, (customer_id, account_type, balance, currency_code, status.value))
            return Account.from_dict(cursor.fetchone())

    def _fetch(self, account_id: int) -> Account:
        with self._transaction() as cursor:
            cursor.execute(f"SELECT {_POSTGRES_COLUMNS} FROM accounts WHERE id = %s", (account_id,))
            row = cursor.fetchone()
        if row is None:
            raise self._not_found(account_id)
        return Account.from_dict(row)

    def _page(self, limit: int, offset: int) -> List[Account]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {_POSTGRES_COLUMNS} FROM accounts ORDER BY id LIMIT %s OFFSET %s",
                (limit, offset)
            )
            return [Account.from_dict(row) for row in cursor.fetchall()]

    def _update(self, account_id: int, account_type: str, status: AccountStatus) -> Account:
        with self._transaction() as cursor:
            cursor.execute(f"""
                UPDATE accounts
                SET account_type = %s, status = %s, updated_at = GREATEST(NOW(), created_at)
                WHERE id = %s
                RETURNING {_POSTGRES_COLUMNS}
            """, (account_type, status.value, account_id))
            row = cursor.fetchone()
            if row is None:
                raise self._not_found(account_id)
            return Account.from_dict(row)

    def _apply_delta(self, account_id, delta, require_status) -> Account:
        status_clause = " AND status = %s" if require_status is not None else ""
        params: List[Any] = [delta, account_id, delta, delta, MAX_AMOUNT]
        if require_status is not None:
            params.append(require_status.value)

        with self._transaction() as cursor:
            cursor.execute(f"""
                UPDATE accounts
                SET balance = balance + %s, updated_at = GREATEST(NOW(), created_at)
                WHERE id = %s AND balance + %s >= 0 AND balance + %s <= %s{status_clause}
                RETURNING {_POSTGRES_COLUMNS}
            """, params)
            row = cursor.fetchone()
            if row is not None:
                return Account.from_dict(row)

            cursor.execute("SELECT balance, status FROM accounts WHERE id = %s", (account_id,))
            current = cursor.fetchone()
            if current is None:
                raise self._not_found(account_id)
            raise self._rejection(
                account_id, delta, Decimal(current["balance"]),
                AccountStatus(current["status"]), require_status
            )

    def close(self) -> None:
        """Close every pooled connection"""
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None


def create_store(config) -> AccountStore:
    """
    Build the account store named by ``config.database_url``.

    Supported URLs: ``memory://``, ``sqlite://`` (in-memory SQLite),
    ``sqlite:///relative.db``, ``sqlite:////absolute.db`` and
    ``postgresql://...`` / ``postgres://...``.
    """
    url = config.database_url
    scheme = urlparse(url).scheme.lower()

    if scheme == "memory":
        store: AccountStore = InMemoryAccountStore(config.default_currency, config.store_timeout_seconds)
    elif scheme == "sqlite":
        path = url[len("sqlite://"):]
        path = path[1:] if path.startswith("/") else path
        store = SQLiteAccountStore(path or ":memory:", config.default_currency, config.store_timeout_seconds)
    elif scheme in ("postgresql", "postgres"):
        store = PostgreSQLAccountStore(
            url, config.default_currency, config.store_timeout_seconds, config.database_pool_size
        )
    else:
        raise ConfigurationError(f"Unsupported database_url: {url}", {"database_url": url})

    logger.info("Account store ready: %s", type(store).__name__)
    return store
