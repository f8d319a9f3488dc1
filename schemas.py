from datetime import date
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import CategoryType, Frequency


HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?$"


def normalize_amount(amount: float, is_income: bool) -> float:
    return abs(amount) if is_income else -abs(amount)


class SignedAmount(BaseModel):
    """Base for anything carrying an amount whose sign follows ``is_income``.

    Callers may pass either sign; the stored value is always positive for
    income and negative for expenses. Zero is rejected.
    """

    amount: float = Field(..., allow_inf_nan=False)
    is_income: bool

    @model_validator(mode="after")
    def _normalize_sign(self) -> "SignedAmount":
        if self.amount == 0:
            raise ValueError("Amount must be non-zero")
        self.amount = normalize_amount(self.amount, self.is_income)
        return self


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    color_hex: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    icon_name: Optional[str] = Field(default=None, max_length=50)


class TransactionIn(SignedAmount):
    date: date
    description: str = Field(..., min_length=1, max_length=200)
    category_id: Optional[UUID] = None


class RecurringRuleIn(SignedAmount):
    description: str = Field(..., min_length=1, max_length=200)
    frequency: Frequency
    next_run_date: date
    category_id: Optional[UUID] = None
    is_active: bool = True


class BudgetRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    name: str


class CategoryRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    name: str
    type: CategoryType
    color_hex: Optional[str] = None
    icon_name: Optional[str] = None
    is_active: bool = True


class TransactionRecord(SignedAmount):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    budget_id: UUID
    date: date
    description: str
    category_id: Optional[UUID] = None
    is_recurring_instance: bool = False
    recurring_rule_id: Optional[UUID] = None


class RecurringRuleRecord(SignedAmount):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    budget_id: UUID
    description: str
    frequency: Frequency
    next_run_date: date
    category_id: Optional[UUID] = None
    is_active: bool = True
