from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from .db import HistoryType


class LoginRequest(BaseModel):
    username: str
    password: str


class AccountOpenRequest(BaseModel):
    name: str = Field(..., description="Name of the account holder")
    initial_balance: Decimal = Field(default=Decimal("0"), description="Opening balance")
    username: str
    password: str
    pin: str = Field(..., description="4-digit transaction PIN")


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_number: int
    name: str
    username: str
    balance: Decimal = Field(..., ge=0)
    created_at: datetime


class BalanceResponse(BaseModel):
    account_number: int
    balance: Decimal


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: int
    type: HistoryType
    amount: Decimal
    timestamp: datetime
    account_number: int


class MoneyMovementRequest(BaseModel):
    amount: Decimal
    pin: str = Field(..., description="Transaction PIN authorising the movement")


class TransferRequest(BaseModel):
    sender_account_number: int
    receiver_account_number: int
    amount: Decimal
    pin: str = Field(..., description="Sender's transaction PIN")


class TransferResponse(BaseModel):
    sender: AccountResponse
    receiver: AccountResponse
