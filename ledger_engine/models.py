from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, model_validator


class AccountKind(str, Enum):
    ORDINARY = "ordinary"
    REVOLVING_CREDIT = "revolving_credit"


class Direction(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class CategoryKind(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    BOTH = "both"


class CategoryRole(str, Enum):
    REGULAR = "regular"
    LOAN_REPAYMENT = "loan_repayment"
    COMMISSION = "commission"


ROLE_NAMES = {
    "loan repayment": CategoryRole.LOAN_REPAYMENT,
    "погашение кредита": CategoryRole.LOAN_REPAYMENT,
    "commission": CategoryRole.COMMISSION,
    "комиссия": CategoryRole.COMMISSION,
}


def resolve_category_role(name: str, role: Optional[CategoryRole] = None) -> CategoryRole:
    """Pick a category role once, at creation time.

    An explicit role wins; otherwise the display name is looked up in
    ROLE_NAMES. Later renames do not change the stored role.
    """
    if role is not None:
        return role
    return ROLE_NAMES.get(" ".join(name.lower().split()), CategoryRole.REGULAR)


AmountInput = Union[Decimal, int, str]


# Requests

class CreateAccountRequest(BaseModel):
    name: str = Field(..., min_length=1)
    kind: AccountKind = AccountKind.ORDINARY
    currency: Optional[str] = None
    credit_limit_major: Optional[AmountInput] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Credit card",
            "kind": "revolving_credit",
            "currency": "RUB",
            "credit_limit_major": "500.00"
        }
    })


class CreateCategoryRequest(BaseModel):
    name: str = Field(..., min_length=1)
    kind: CategoryKind = CategoryKind.BOTH
    role: Optional[CategoryRole] = None


class CreateEntryRequest(BaseModel):
    account_id: UUID
    category_id: Optional[UUID] = None
    direction: Direction
    amount_major: AmountInput = Field(..., description="Amount in major units, e.g. 100.50")
    currency: Optional[str] = None
    occurred_at: Optional[datetime] = None
    note: Optional[str] = None
    counterparty: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "account_id": "550e8400-e29b-41d4-a716-446655440000",
            "direction": "expense",
            "amount_major": "30.00",
            "currency": "RUB",
            "occurred_at": "2024-03-01T10:15:00",
            "counterparty": "Bakery"
        }
    })


class UpdateEntryRequest(BaseModel):
    """Partial update. Only the fields actually sent are applied."""
    account_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    direction: Optional[Direction] = None
    amount_major: Optional[AmountInput] = None
    currency: Optional[str] = None
    occurred_at: Optional[datetime] = None
    note: Optional[str] = None
    counterparty: Optional[str] = None

    def supplied(self) -> dict:
        return self.model_dump(exclude_unset=True)


class CreateTransferRequest(BaseModel):
    from_account_id: UUID
    to_account_id: UUID
    amount_major: AmountInput
    currency: Optional[str] = None
    occurred_at: Optional[datetime] = None
    note: Optional[str] = None


class UpdateTransferRequest(BaseModel):
    occurred_at: Optional[datetime] = None
    note: Optional[str] = None

    def supplied(self) -> dict:
        return self.model_dump(exclude_unset=True)


# Read models

class Account(BaseModel):
    id: UUID
    name: str
    kind: AccountKind
    currency: str
    balance: int = 0
    credit_limit: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def _check_credit_limit(self) -> "Account":
        if self.kind == AccountKind.REVOLVING_CREDIT and self.credit_limit is None:
            raise ValueError("Revolving credit accounts need a credit limit")
        if self.kind == AccountKind.ORDINARY and self.credit_limit is not None:
            raise ValueError("Ordinary accounts carry no credit limit")
        return self

    @property
    def available(self) -> int:
        if self.kind == AccountKind.REVOLVING_CREDIT:
            return self.credit_limit - self.balance
        return self.balance


class Category(BaseModel):
    id: UUID
    name: str
    kind: CategoryKind
    role: CategoryRole = CategoryRole.REGULAR
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Entry(BaseModel):
    id: UUID
    account_id: UUID
    category_id: Optional[UUID] = None
    direction: Direction
    amount: int = Field(..., gt=0)
    currency: str
    occurred_at: datetime
    note: Optional[str] = None
    counterparty: Optional[str] = None
    transfer_id: Optional[UUID] = None
    transfer_role: Optional[Direction] = None
    embedding: Optional[list[float]] = Field(default=None, exclude=True)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_transfer_half(self) -> bool:
        return self.transfer_id is not None


class Transfer(BaseModel):
    id: UUID
    from_account_id: UUID
    to_account_id: UUID
    amount: int = Field(..., gt=0)
    currency: str
    occurred_at: datetime
    note: Optional[str] = None
    expense_entry_id: UUID
    income_entry_id: UUID
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LoanPayment(BaseModel):
    id: UUID
    loan_id: UUID
    amount: int
    principal_amount: int
    interest_amount: int = 0
    payment_date: date
    transaction_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class EntrySelectItem(BaseModel):
    id: UUID
    label: str
    amount: int
    currency: str
    direction: Direction
    occurred_at: datetime


class AccountResponse(BaseModel):
    account: Account
    available: int


class CascadeReport(BaseModel):
    loan_payment_id: Optional[UUID] = None
    loan_id: Optional[UUID] = None
    commission_entry_id: Optional[UUID] = None
    warnings: list[str] = Field(default_factory=list)


# Bulk import

class ImportEntryRow(BaseModel):
    """One parsed row of a bank statement or CSV export.

    ``direction`` is kept as text so a row describing a transfer can be
    reported instead of failing the whole request.
    """
    row_number: int
    occurred_at: Union[datetime, str]
    direction: str
    amount_major: AmountInput
    currency: str
    account_name: Optional[str] = None
    category_name: Optional[str] = None
    note: Optional[str] = None
    counterparty: Optional[str] = None


class ImportEntriesRequest(BaseModel):
    rows: list[ImportEntryRow]

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "rows": [{
                "row_number": 2,
                "occurred_at": "2024-03-01T10:15:00+03:00",
                "direction": "expense",
                "amount_major": "1 250,00",
                "currency": "RUB",
                "account_name": "Cash",
                "category_name": "Groceries",
                "counterparty": "Bakery"
            }]
        }
    })


class ImportResult(BaseModel):
    ok: bool
    message: str
    imported: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    entry_ids: list[UUID] = Field(default_factory=list)
