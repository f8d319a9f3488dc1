import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    yearly = "yearly"

    @property
    def display_name(self) -> str:
        if self is Frequency.biweekly:
            return "Bi-weekly"
        return self.value.capitalize()


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    color_hex: Mapped[Optional[str]] = mapped_column(String(9))
    icon_name: Mapped[Optional[str]] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("type", "name", name="uq_category_type_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    budget_id: Mapped[str] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    is_income: Mapped[bool] = mapped_column(Boolean, nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    is_recurring_instance: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    # Weak back-reference: no foreign key, instances outlive their rule.
    recurring_rule_id: Mapped[Optional[str]] = mapped_column(String(36))

    __table_args__ = (
        UniqueConstraint(
            "budget_id",
            "recurring_rule_id",
            "date",
            name="uq_txn_rule_occurrence",
        ),
        Index("ix_transactions_budget_date", "budget_id", "date"),
        Index("ix_transactions_rule", "recurring_rule_id"),
        CheckConstraint("amount != 0", name="ck_transactions_amount_nonzero"),
        CheckConstraint(
            "(is_income AND amount > 0) OR (NOT is_income AND amount < 0)",
            name="ck_transactions_amount_sign",
        ),
    )


class RecurringRule(Base, TimestampMixin):
    __tablename__ = "recurring_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    budget_id: Mapped[str] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    is_income: Mapped[bool] = mapped_column(Boolean, nullable=False)
    # Plain text so rows written by other versions with unknown values can be
    # detected and skipped instead of failing the whole query.
    frequency: Mapped[str] = mapped_column(String(16), nullable=False)
    next_run_date: Mapped[date] = mapped_column(Date, nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_recurring_rules_budget_active", "budget_id", "is_active"),
        CheckConstraint("amount != 0", name="ck_rule_amount_nonzero"),
    )
