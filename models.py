from pydantic import BaseModel, Field, validator
from enum import Enum
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
import re


# Item identifiers are drawn from [0, ITEM_ID_CAPACITY)
ITEM_ID_CAPACITY = 100

USER_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_.-]+$')


class LedgerModel(BaseModel):
    class Config:
        json_encoders = {
            Decimal: lambda v: float(v),
            datetime: lambda v: v.isoformat()
        }


class Item(LedgerModel):
    id: int = Field(..., ge=0, lt=ITEM_ID_CAPACITY, description="Item identifier, unique across all accounts")
    name: str = Field(..., description="Item name")
    price: Decimal = Field(..., description="Item price")


class Account(LedgerModel):
    user_name: str = Field(..., min_length=1, description="Unique account name")
    name: str = Field(..., description="Display name")
    balance: Decimal = Field(..., description="Account balance")
    items: List[Item] = Field(default_factory=list, description="Owned items in insertion order")


class ListedItem(LedgerModel):
    id: int = Field(..., description="Item identifier")
    name: str = Field(..., description="Item name")
    price: Decimal = Field(..., description="Item price")
    seller: str = Field(..., description="User name of the current owner")

    @classmethod
    def from_item(cls, item: Item, seller: str) -> "ListedItem":
        return cls(id=item.id, name=item.name, price=item.price, seller=seller)


class LedgerErrorCode(str, Enum):
    account_already_exists = "ACCOUNT_ALREADY_EXISTS"
    account_not_found = "ACCOUNT_NOT_FOUND"
    item_not_found = "ITEM_NOT_FOUND"
    self_purchase = "SELF_PURCHASE"
    insufficient_funds = "INSUFFICIENT_FUNDS"
    id_space_exhausted = "ID_SPACE_EXHAUSTED"


class LedgerResult(LedgerModel):
    """Outcome of a ledger operation.

    Rejected operations carry an error code and leave the ledger untouched.
    """
    success: bool
    error: Optional[LedgerErrorCode] = None
    detail: Optional[str] = None
    account: Optional[Account] = None
    item: Optional[Item] = None

    @classmethod
    def ok(cls, account: Optional[Account] = None, item: Optional[Item] = None) -> "LedgerResult":
        return cls(success=True, account=account, item=item)

    @classmethod
    def fail(cls, error: LedgerErrorCode, detail: str) -> "LedgerResult":
        return cls(success=False, error=error, detail=detail)

    def __bool__(self) -> bool:
        return self.success


class RegisterRequest(BaseModel):
    user_name: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Unique account name"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name"
    )
    starting_balance: Decimal = Field(
        Decimal("0"),
        max_digits=12,
        decimal_places=2,
        description="Initial balance"
    )

    @validator('user_name')
    def validate_user_name(cls, v):
        if not USER_NAME_PATTERN.match(v):
            raise ValueError('User name must contain only alphanumeric characters, dots, underscores, and hyphens')
        return v


class AddItemRequest(BaseModel):
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Item name"
    )
    price: Decimal = Field(
        ...,
        ge=0,
        max_digits=12,
        decimal_places=2,
        description="Item price"
    )


class BuyRequest(BaseModel):
    buyer: str = Field(..., min_length=1, max_length=50, description="User name of the buyer")
    item_id: int = Field(..., description="Identifier of the item to buy")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of registered accounts")
    items_count: int = Field(..., description="Number of items in the ledger")
