"""
Account management endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .auth import get_current_caller, get_ledger_service
from .schemas import AmountRequest, CreateAccountRequest, UpdateAccountRequest
from ..service import LedgerService
from ..storage import DEFAULT_PAGE_SIZE


router = APIRouter()


@router.get("")
def list_accounts(
    limit: int = Query(DEFAULT_PAGE_SIZE),
    offset: int = Query(0),
    ledger: LedgerService = Depends(get_ledger_service),
    caller: Optional[str] = Depends(get_current_caller)
):
    """List accounts, one page at a time"""
    accounts = ledger.list_accounts(limit=limit, offset=offset)
    return [account.to_dict() for account in accounts]


@router.post("", status_code=status.HTTP_201_CREATED)
def create_account(
    request: CreateAccountRequest,
    ledger: LedgerService = Depends(get_ledger_service),
    caller: Optional[str] = Depends(get_current_caller)
):
    """Create a new account"""
    account = ledger.create_account(
        customer_id=request.customer_id,
        account_type=request.account_type,
        balance=request.balance,
        currency_code=request.currency_code,
        status=request.status,
        caller=caller
    )
    return account.to_dict()


@router.get("/{account_id}")
def get_account(
    account_id: int,
    ledger: LedgerService = Depends(get_ledger_service),
    caller: Optional[str] = Depends(get_current_caller)
):
    """Get account details"""
    return ledger.get_account(account_id).to_dict()


@router.put("/{account_id}")
def update_account(
    account_id: int,
    request: UpdateAccountRequest,
    ledger: LedgerService = Depends(get_ledger_service),
    caller: Optional[str] = Depends(get_current_caller)
):
    """Update account type and status"""
    account = ledger.update_account(
        account_id, request.account_type, request.status, caller=caller
    )
    return account.to_dict()


@router.get("/{account_id}/balance")
def get_balance(
    account_id: int,
    ledger: LedgerService = Depends(get_ledger_service),
    caller: Optional[str] = Depends(get_current_caller)
):
    """Get account balance"""
    return ledger.get_balance(account_id).to_dict()


@router.post("/{account_id}/deposit")
def deposit(
    account_id: int,
    request: AmountRequest,
    ledger: LedgerService = Depends(get_ledger_service),
    caller: Optional[str] = Depends(get_current_caller)
):
    """Deposit funds"""
    return ledger.deposit(account_id, request.amount, caller=caller).to_dict()


@router.post("/{account_id}/withdraw")
def withdraw(
    account_id: int,
    request: AmountRequest,
    ledger: LedgerService = Depends(get_ledger_service),
    caller: Optional[str] = Depends(get_current_caller)
):
    """Withdraw funds"""
    return ledger.withdraw(account_id, request.amount, caller=caller).to_dict()
