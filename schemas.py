import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AlertType, Frequency, ReceiptStatus


class UserIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    name: str = Field(..., min_length=1, max_length=120)
    password: str = Field(..., min_length=8, max_length=128)


class LoginIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class BankAccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    bank_name: Optional[str] = Field(default=None, max_length=120)
    account_number: Optional[str] = Field(default=None, max_length=64)
    is_default: bool = False


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=255)
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)


class DepositTypeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=255)
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)


class ExpenseIn(BaseModel):
    bank_account_id: int
    category_id: int
    amount_cents: int = Field(..., gt=0)
    note: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    is_recurring: bool = False
    recurring_expense_id: Optional[int] = None
    receipt_id: Optional[int] = None


class ExpenseUpdate(BaseModel):
    """Partial update; only fields present in the payload are applied."""

    bank_account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    note: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    is_recurring: Optional[bool] = None
    recurring_expense_id: Optional[int] = None


class RecurringExpenseIn(BaseModel):
    category_id: int
    amount_cents: int = Field(..., gt=0)
    note: Optional[str] = Field(default=None, max_length=500)
    frequency: Frequency
    start_date: dt.date
    end_date: Optional[dt.date] = None


class DepositIn(BaseModel):
    bank_account_id: int
    deposit_type_id: int
    amount_cents: int = Field(..., gt=0)
    note: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None


class DepositUpdate(BaseModel):
    bank_account_id: Optional[int] = None
    deposit_type_id: Optional[int] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    note: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None


class BudgetIn(BaseModel):
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    # Zero limits are rejected: percentages of a zero limit are undefined.
    amount_limit_cents: int = Field(..., gt=0)
    threshold_percentage: int = Field(default=80, ge=1, le=100)


class BudgetUpdate(BaseModel):
    amount_limit_cents: Optional[int] = Field(default=None, gt=0)
    threshold_percentage: Optional[int] = Field(default=None, ge=1, le=100)


class ReceiptIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bank_account_id: int
    merchant: str = Field(..., min_length=1, max_length=200)
    total_cents: int = Field(..., gt=0)
    receipt_date: Optional[dt.date] = None
    category: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = Field(default=None, max_length=500)
    raw_text: Optional[str] = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str
    created_at: dt.datetime


class TokenOut(BaseModel):
    token: str
    user: UserOut


class BankAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    bank_name: Optional[str]
    account_number: Optional[str]
    is_default: bool
    balance_cents: int


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    icon: Optional[str]
    color: Optional[str]


class DepositTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    icon: Optional[str]
    color: Optional[str]


class RecurringExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    amount_cents: int
    note: Optional[str]
    frequency: Frequency
    start_date: dt.date
    end_date: Optional[dt.date]
    next_due_date: dt.date
    is_active: bool


class ReceiptRefOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    merchant: str
    total_cents: int
    receipt_date: dt.date
    status: ReceiptStatus


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bank_account_id: int
    category_id: int
    amount_cents: int
    note: Optional[str]
    date: dt.date
    is_recurring: bool
    recurring_expense_id: Optional[int]
    receipt_id: Optional[int]
    created_at: dt.datetime
    category: Optional[CategoryOut] = None
    bank_account: Optional[BankAccountOut] = None
    receipt: Optional[ReceiptRefOut] = None
    recurring_expense: Optional[RecurringExpenseOut] = None


class DepositOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bank_account_id: int
    deposit_type_id: int
    amount_cents: int
    note: Optional[str]
    date: dt.date
    created_at: dt.datetime
    deposit_type: Optional[DepositTypeOut] = None
    bank_account: Optional[BankAccountOut] = None


class ReceiptOut(ReceiptRefOut):
    raw_text: Optional[str]
    created_at: dt.datetime
    expenses: list[ExpenseOut] = Field(default_factory=list)


class BudgetAlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    alert_type: AlertType
    message: str
    is_read: bool
    created_at: dt.datetime


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    year: int
    month: int
    amount_limit_cents: int
    threshold_percentage: int
    spent_cents: int
    alerts: list[BudgetAlertOut] = Field(default_factory=list)
