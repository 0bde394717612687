from fastapi import APIRouter, Depends, status

from ..core.dependencies import get_ledger_service
from ..models import (
    Account,
    AccountOpenRequest,
    AccountResponse,
    BalanceResponse,
    HistoryEntryResponse,
    LoginRequest,
    MoneyMovementRequest,
    TransferRequest,
    TransferResponse,
)
from ..services import LedgerService


def _account_to_response(account: Account) -> AccountResponse:
    return AccountResponse.model_validate(account)


session_router = APIRouter(prefix="/sessions", tags=["sessions"])

@session_router.post("", response_model=AccountResponse)
def login(
    payload: LoginRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return _account_to_response(service.login(payload.username, payload.password))


router = APIRouter(prefix="/accounts", tags=["accounts"])

@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def open_account(
    payload: AccountOpenRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    account = service.open_account(
        payload.name,
        payload.initial_balance,
        payload.username,
        payload.password,
        payload.pin,
    )
    return _account_to_response(account)

@router.get("/{account_number}", response_model=AccountResponse)
def get_account(
    account_number: int,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return _account_to_response(service.get_account(account_number))

@router.get("/{account_number}/balance", response_model=BalanceResponse)
def get_balance(
    account_number: int,
    service: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return BalanceResponse(
        account_number=account_number,
        balance=service.get_balance(account_number),
    )

@router.get("/{account_number}/history", response_model=list[HistoryEntryResponse])
def get_history(
    account_number: int,
    service: LedgerService = Depends(get_ledger_service),
) -> list[HistoryEntryResponse]:
    return [
        HistoryEntryResponse.model_validate(entry)
        for entry in service.get_history(account_number)
    ]

@router.post("/{account_number}/deposit", response_model=AccountResponse)
def deposit(
    account_number: int,
    payload: MoneyMovementRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    service.verify_pin(account_number, payload.pin)
    return _account_to_response(service.deposit(account_number, payload.amount))

@router.post("/{account_number}/withdraw", response_model=AccountResponse)
def withdraw(
    account_number: int,
    payload: MoneyMovementRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    service.verify_pin(account_number, payload.pin)
    return _account_to_response(service.withdraw(account_number, payload.amount))

transfer_router = APIRouter(prefix="/transfers", tags=["transfers"])

@transfer_router.post("", response_model=TransferResponse)
def create_transfer(
    payload: TransferRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> TransferResponse:
    service.verify_pin(payload.sender_account_number, payload.pin)
    sender, receiver = service.transfer(
        payload.sender_account_number,
        payload.receiver_account_number,
        payload.amount,
    )
    return TransferResponse(
        sender=_account_to_response(sender),
        receiver=_account_to_response(receiver),
    )

__all__ = ["router", "session_router", "transfer_router"]
