"""
Account Data Model

Account records, balance snapshots and funds movement results. All monetary
values are Decimal quantized to two fractional digits. NEVER float.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from typing import Any, Dict, Union
from enum import Enum
import re

from .errors import InvalidInputError


CENTS = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999999.99")  # DECIMAL(15,2)
ZERO = Decimal("0.00")

_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")

AmountLike = Union[Decimal, int, float, str]


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"


def to_amount(value: AmountLike, field_name: str = "amount") -> Decimal:
    """
    Normalize a monetary value to a two-place Decimal.

    Floats go through ``str()`` so 0.1 becomes Decimal('0.10') rather than
    its binary expansion. Booleans, NaN, infinities and values wider than the
    storage column are rejected.
    """
    if value is None or isinstance(value, bool):
        raise InvalidInputError(f"{field_name} is required", {field_name: value})

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"{field_name} must be a decimal number", {field_name: value})

    if not amount.is_finite():
        raise InvalidInputError(f"{field_name} must be a finite number", {field_name: value})

    if abs(amount) <= MAX_AMOUNT + CENTS:
        amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    if abs(amount) > MAX_AMOUNT:
        raise InvalidInputError(f"{field_name} exceeds the maximum of {MAX_AMOUNT}", {field_name: value})
    return amount


def normalize_currency_code(code: str) -> str:
    """Upper-case a currency code and check it is three letters"""
    if not isinstance(code, str) or not _CURRENCY_CODE.match(code.strip().upper()):
        raise InvalidInputError("currency_code must be a 3-letter code", {"currency_code": code})
    return code.strip().upper()


def parse_status(status: Union[AccountStatus, str]) -> AccountStatus:
    """Coerce a status value, rejecting anything outside the lifecycle"""
    if isinstance(status, AccountStatus):
        return status
    try:
        return AccountStatus(str(status).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in AccountStatus)
        raise InvalidInputError(f"status must be one of: {allowed}", {"status": status})


def format_amount(amount: Decimal) -> str:
    return str(amount.quantize(CENTS, rounding=ROUND_HALF_UP))


@dataclass
class Account:
    """
    Customer account record as held by the account store.

    ``balance`` is never negative; ``id`` and ``created_at`` never change
    after creation.
    """
    id: int
    customer_id: int
    account_type: str
    balance: Decimal
    currency_code: str
    status: AccountStatus
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary"""
        result = asdict(self)
        result["balance"] = format_amount(self.balance)
        result["status"] = self.status.value
        result["created_at"] = self.created_at.isoformat()
        result["updated_at"] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        """Create instance from a stored row or dictionary"""
        return cls(
            id=int(data["id"]),
            customer_id=int(data["customer_id"]),
            account_type=data["account_type"],
            balance=Decimal(str(data["balance"])).quantize(CENTS),
            currency_code=data["currency_code"],
            status=AccountStatus(data["status"]),
            created_at=_as_datetime(data["created_at"]),
            updated_at=_as_datetime(data["updated_at"]),
        )


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance of one account at a consistent point"""
    account_id: int
    balance: Decimal
    currency_code: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "balance": format_amount(self.balance),
            "currency_code": self.currency_code,
        }


@dataclass(frozen=True)
class FundsMovement:
    """Outcome of a successful deposit or withdrawal"""
    account_id: int
    amount: Decimal
    balance: Decimal
    currency_code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "balance": format_amount(self.balance),
            "currency_code": self.currency_code,
            "message": self.message,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_datetime(value: Union[str, datetime]) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value
