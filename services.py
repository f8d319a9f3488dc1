from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Optional
from uuid import UUID

from config import get_settings
from models import CategoryType
from periods import Period, month_period
from recurrence import MaterializationReport, RecurringEngine, occurrences
from schemas import (
    BudgetIn,
    BudgetRecord,
    CategoryIn,
    CategoryRecord,
    RecurringRuleIn,
    RecurringRuleRecord,
    TransactionIn,
    TransactionRecord,
)
from store import LedgerStore


logger = logging.getLogger(__name__)


def _category_type(is_income: bool) -> CategoryType:
    return CategoryType.income if is_income else CategoryType.expense


def _check_category(
    store: LedgerStore,
    category_id: Optional[UUID],
    is_income: bool,
    *,
    current_id: Optional[UUID] = None,
) -> None:
    if category_id is None:
        return
    category = store.get_category(category_id)
    if category is None:
        raise ValueError("Category not found")
    if category.type != _category_type(is_income):
        raise ValueError("Category type mismatch")
    # Inactive categories stay valid on entries that already use them.
    if not category.is_active and category_id != current_id:
        raise ValueError("Category is inactive")


class BudgetService:
    def __init__(
        self, store: LedgerStore, engine: Optional[RecurringEngine] = None
    ) -> None:
        self.store = store
        self.engine = engine or RecurringEngine(store)

    def list_all(self) -> list[BudgetRecord]:
        return self.store.fetch_budgets()

    def get(self, budget_id: UUID) -> BudgetRecord:
        budget = self.store.get_budget(budget_id)
        if budget is None:
            raise ValueError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> BudgetRecord:
        name = data.name.strip()
        if not name:
            raise ValueError("Budget name cannot be empty")
        budget = BudgetRecord(name=name)
        with self.store.atomic():
            self.store.insert_budget(budget)
        return budget

    def ensure_default(self) -> BudgetRecord:
        """Return the first budget, creating the default one on a fresh store."""
        budgets = self.list_all()
        if budgets:
            return budgets[0]
        logger.info("budgets: store empty, creating default budget")
        return self.create(BudgetIn(name=get_settings().default_budget_name))

    def select(
        self, budget_id: UUID, today: Optional[date] = None
    ) -> MaterializationReport:
        """Load a budget for display: materializes its rules for this month."""
        self.get(budget_id)
        return self.engine.materialize_for_current_month(budget_id, today=today)

    def delete(self, budget_id: UUID) -> None:
        self.engine.delete_budget(budget_id)


class CategoryService:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def list_all(
        self,
        include_inactive: bool = False,
        type: Optional[CategoryType] = None,
    ) -> list[CategoryRecord]:
        categories = self.store.fetch_categories()
        if not include_inactive:
            categories = [c for c in categories if c.is_active]
        if type is not None:
            categories = [c for c in categories if c.type == type]
        return categories

    def for_picker(self, is_income: bool) -> list[CategoryRecord]:
        return self.list_all(type=_category_type(is_income))

    def get(self, category_id: UUID) -> CategoryRecord:
        category = self.store.get_category(category_id)
        if category is None:
            raise ValueError("Category not found")
        return category

    def _ensure_unique(
        self, name: str, type: CategoryType, exclude: Optional[UUID] = None
    ) -> None:
        for existing in self.store.fetch_categories():
            if (
                existing.type == type
                and existing.name.lower() == name.lower()
                and existing.id != exclude
            ):
                raise ValueError("Category with this name already exists")

    def create(self, data: CategoryIn) -> CategoryRecord:
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        self._ensure_unique(name, data.type)
        category = CategoryRecord(
            name=name,
            type=data.type,
            color_hex=data.color_hex,
            icon_name=data.icon_name,
        )
        with self.store.atomic():
            self.store.insert_category(category)
        return category

    def update(self, category_id: UUID, data: CategoryIn) -> CategoryRecord:
        category = self.get(category_id)
        if data.type != category.type:
            raise ValueError("Category type cannot be changed")
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        self._ensure_unique(name, data.type, exclude=category_id)
        updated = category.model_copy(
            update={
                "name": name,
                "color_hex": data.color_hex,
                "icon_name": data.icon_name,
            }
        )
        with self.store.atomic():
            self.store.update_category(updated)
        return updated

    def _set_active(self, category_id: UUID, is_active: bool) -> CategoryRecord:
        category = self.get(category_id)
        updated = category.model_copy(update={"is_active": is_active})
        with self.store.atomic():
            self.store.update_category(updated)
        return updated

    def deactivate(self, category_id: UUID) -> CategoryRecord:
        return self._set_active(category_id, False)

    def restore(self, category_id: UUID) -> CategoryRecord:
        return self._set_active(category_id, True)


class TransactionService:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def list_for_budget(self, budget_id: UUID) -> list[TransactionRecord]:
        return self.store.fetch_transactions(budget_id)

    def list_for_month(
        self, budget_id: UUID, year: int, month: int
    ) -> list[TransactionRecord]:
        period = month_period(year, month)
        return sorted(
            (t for t in self.store.fetch_transactions(budget_id) if t.date in period),
            key=lambda t: t.date,
        )

    def get(self, transaction_id: UUID) -> TransactionRecord:
        txn = self.store.get_transaction(transaction_id)
        if txn is None:
            raise ValueError("Transaction not found")
        return txn

    def create(self, budget_id: UUID, data: TransactionIn) -> TransactionRecord:
        if self.store.get_budget(budget_id) is None:
            raise ValueError("Budget not found")
        _check_category(self.store, data.category_id, data.is_income)
        txn = TransactionRecord(budget_id=budget_id, **data.model_dump())
        with self.store.atomic():
            self.store.insert_transaction(txn)
        return txn

    def update(self, transaction_id: UUID, data: TransactionIn) -> TransactionRecord:
        txn = self.get(transaction_id)
        _check_category(
            self.store, data.category_id, data.is_income, current_id=txn.category_id
        )
        # Recurring linkage survives user edits.
        updated = TransactionRecord(
            id=txn.id,
            budget_id=txn.budget_id,
            is_recurring_instance=txn.is_recurring_instance,
            recurring_rule_id=txn.recurring_rule_id,
            **data.model_dump(),
        )
        with self.store.atomic():
            self.store.update_transaction(updated)
        return updated

    def delete(self, transaction_id: UUID) -> None:
        self.get(transaction_id)
        with self.store.atomic():
            self.store.delete_transaction(transaction_id)

    def origin_rule(self, txn: TransactionRecord) -> Optional[RecurringRuleRecord]:
        """The rule that generated ``txn``, or None for manual and orphaned entries."""
        if txn.recurring_rule_id is None:
            return None
        return self.store.get_recurring_rule(txn.recurring_rule_id)


class RecurringRuleService:
    def __init__(
        self, store: LedgerStore, engine: Optional[RecurringEngine] = None
    ) -> None:
        self.store = store
        self.engine = engine or RecurringEngine(store)

    def list(self, budget_id: UUID) -> list[RecurringRuleRecord]:
        return self.store.fetch_recurring_rules(budget_id)

    def get(self, rule_id: UUID) -> RecurringRuleRecord:
        rule = self.store.get_recurring_rule(rule_id)
        if rule is None:
            raise ValueError("Rule not found")
        return rule

    def create(self, budget_id: UUID, data: RecurringRuleIn) -> RecurringRuleRecord:
        if self.store.get_budget(budget_id) is None:
            raise ValueError("Budget not found")
        _check_category(self.store, data.category_id, data.is_income)
        rule = RecurringRuleRecord(budget_id=budget_id, **data.model_dump())
        with self.store.atomic():
            self.store.insert_recurring_rule(rule)
        return rule

    def save_edit(
        self, rule_id: UUID, data: RecurringRuleIn, today: Optional[date] = None
    ) -> RecurringRuleRecord:
        old = self.get(rule_id)
        _check_category(
            self.store, data.category_id, data.is_income, current_id=old.category_id
        )
        new = RecurringRuleRecord(id=old.id, budget_id=old.budget_id, **data.model_dump())
        self.engine.apply_rule_edit(old, new, today=today)
        return self.get(rule_id)

    def set_active(
        self, rule_id: UUID, is_active: bool, today: Optional[date] = None
    ) -> RecurringRuleRecord:
        old = self.get(rule_id)
        new = old.model_copy(update={"is_active": is_active})
        self.engine.apply_rule_edit(old, new, today=today)
        return self.get(rule_id)

    def delete(self, rule_id: UUID) -> None:
        self.engine.delete_rule(rule_id)


@dataclass(frozen=True)
class MonthSummary:
    income: float
    expenses: float

    @property
    def net(self) -> float:
        return self.income - self.expenses


@dataclass(frozen=True)
class CategoryTotal:
    category_id: UUID
    total: float


@dataclass(frozen=True)
class CategoryBreakdownItem:
    category: CategoryRecord
    amount: float
    percent: float


@dataclass(frozen=True)
class TrendPoint:
    day: int
    net: float


@dataclass(frozen=True)
class MonthlyTrendPoint:
    month: int
    income: float
    expenses: float


class ReportService:
    """Month-level figures for a budget.

    With ``include_projected`` the figures also count occurrences that active
    rules will produce in the month but that have not been materialized yet,
    which is how future months are previewed.
    """

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def _projected(self, budget_id: UUID, period: Period) -> list[TransactionRecord]:
        existing = {
            (t.recurring_rule_id, t.date)
            for t in self.store.fetch_transactions(budget_id)
            if t.is_recurring_instance
        }
        projected: list[TransactionRecord] = []
        for rule in self.store.fetch_active_recurring_rules(budget_id):
            for due in occurrences(rule, period.start, period.end):
                if (rule.id, due) in existing:
                    continue
                projected.append(
                    TransactionRecord(
                        budget_id=budget_id,
                        date=due,
                        description=rule.description,
                        amount=rule.amount,
                        is_income=rule.is_income,
                        category_id=rule.category_id,
                        is_recurring_instance=True,
                        recurring_rule_id=rule.id,
                    )
                )
        return projected

    def transactions_for_month(
        self,
        budget_id: UUID,
        year: int,
        month: int,
        include_projected: bool = False,
    ) -> list[TransactionRecord]:
        period = month_period(year, month)
        txns = [t for t in self.store.fetch_transactions(budget_id) if t.date in period]
        if include_projected:
            txns.extend(self._projected(budget_id, period))
        return sorted(txns, key=lambda t: t.date)

    def summary(
        self, budget_id: UUID, year: int, month: int, include_projected: bool = False
    ) -> MonthSummary:
        txns = self.transactions_for_month(budget_id, year, month, include_projected)
        return MonthSummary(
            income=sum(t.amount for t in txns if t.amount > 0),
            expenses=sum(-t.amount for t in txns if t.amount < 0),
        )

    def category_totals(
        self, budget_id: UUID, year: int, month: int, include_projected: bool = False
    ) -> list[CategoryTotal]:
        totals: dict[UUID, float] = defaultdict(float)
        for t in self.transactions_for_month(budget_id, year, month, include_projected):
            if t.category_id is not None:
                totals[t.category_id] += t.amount
        return sorted(
            (CategoryTotal(category_id=k, total=v) for k, v in totals.items()),
            key=lambda item: abs(item.total),
            reverse=True,
        )

    def category_breakdown(
        self, budget_id: UUID, year: int, month: int, include_projected: bool = False
    ) -> list[CategoryBreakdownItem]:
        categories = {
            c.id: c
            for c in self.store.fetch_categories()
            if c.type == CategoryType.expense
        }
        spent: dict[UUID, float] = defaultdict(float)
        for t in self.transactions_for_month(budget_id, year, month, include_projected):
            if t.category_id in categories:
                spent[t.category_id] += abs(t.amount)

        total = sum(spent.values())
        if total <= 0:
            return []
        items = [
            CategoryBreakdownItem(
                category=categories[category_id],
                amount=amount,
                percent=amount / total * 100.0,
            )
            for category_id, amount in spent.items()
        ]
        return sorted(items, key=lambda item: item.amount, reverse=True)

    def daily_trend(
        self, budget_id: UUID, year: int, month: int, include_projected: bool = False
    ) -> list[TrendPoint]:
        period = month_period(year, month)
        by_day: dict[int, float] = defaultdict(float)
        for t in self.transactions_for_month(budget_id, year, month, include_projected):
            by_day[t.date.day] += t.amount

        points: list[TrendPoint] = []
        running = 0.0
        for day in range(1, period.end.day + 1):
            running += by_day.get(day, 0.0)
            points.append(TrendPoint(day=day, net=running))
        return points

    def monthly_trend(
        self, budget_id: UUID, year: int, include_projected: bool = False
    ) -> list[MonthlyTrendPoint]:
        points: list[MonthlyTrendPoint] = []
        for month in range(1, 13):
            summary = self.summary(budget_id, year, month, include_projected)
            points.append(
                MonthlyTrendPoint(
                    month=month, income=summary.income, expenses=summary.expenses
                )
            )
        return points
