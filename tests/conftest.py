import os
import tempfile
from contextlib import contextmanager
from datetime import date
from typing import Optional
from uuid import UUID

import pytest

# Keep the module-level engine in database.py away from the working tree.
os.environ.setdefault("BUDGET_TRACKER_DATA_DIR", tempfile.mkdtemp(prefix="budget-tests-"))
os.environ.setdefault("BUDGET_TRACKER_TIMEZONE", "UTC")

from models import Frequency  # noqa: E402
from schemas import (  # noqa: E402
    BudgetRecord,
    CategoryRecord,
    RecurringRuleRecord,
    TransactionRecord,
)
from store import LedgerStore, PersistenceError  # noqa: E402


def _clean(record):
    return type(record).model_validate(record.model_dump())


class InMemoryStore(LedgerStore):
    """Dict-backed store with the same contract as SqlStore."""

    def __init__(self) -> None:
        super().__init__()
        self.budgets: dict[UUID, BudgetRecord] = {}
        self.categories: dict[UUID, CategoryRecord] = {}
        self.transactions: dict[UUID, TransactionRecord] = {}
        self.rules: dict[UUID, RecurringRuleRecord] = {}
        self._depth = 0

    def _tables(self):
        return (self.budgets, self.categories, self.transactions, self.rules)

    @contextmanager
    def atomic(self):
        self._depth += 1
        snapshot = [dict(t) for t in self._tables()] if self._depth == 1 else None
        try:
            yield
        except Exception:
            if snapshot is not None:
                for table, saved in zip(self._tables(), snapshot):
                    table.clear()
                    table.update(saved)
            raise
        finally:
            self._depth -= 1

    # Budgets
    def fetch_budgets(self):
        return list(self.budgets.values())

    def get_budget(self, budget_id):
        return self.budgets.get(budget_id)

    def insert_budget(self, budget):
        self.budgets[budget.id] = _clean(budget)

    def delete_budget(self, budget_id):
        self.budgets.pop(budget_id, None)

    # Categories
    def fetch_categories(self):
        return sorted(self.categories.values(), key=lambda c: (c.type.value, c.name))

    def get_category(self, category_id):
        return self.categories.get(category_id)

    def insert_category(self, category):
        self.categories[category.id] = _clean(category)

    def update_category(self, category):
        if category.id not in self.categories:
            raise ValueError("Category not found")
        self.categories[category.id] = _clean(category)

    # Transactions
    def fetch_transactions(self, budget_id):
        return sorted(
            (t for t in self.transactions.values() if t.budget_id == budget_id),
            key=lambda t: t.date,
        )

    def get_transaction(self, transaction_id):
        return self.transactions.get(transaction_id)

    def insert_transaction(self, transaction):
        if transaction.recurring_rule_id is not None:
            for existing in self.transactions.values():
                if (
                    existing.budget_id == transaction.budget_id
                    and existing.recurring_rule_id == transaction.recurring_rule_id
                    and existing.date == transaction.date
                ):
                    raise PersistenceError("Duplicate recurring instance")
        self.transactions[transaction.id] = _clean(transaction)

    def update_transaction(self, transaction):
        if transaction.id not in self.transactions:
            raise ValueError("Transaction not found")
        self.transactions[transaction.id] = _clean(transaction)

    def delete_transaction(self, transaction_id):
        self.transactions.pop(transaction_id, None)

    def delete_transactions_for_budget(self, budget_id):
        for txn in self.fetch_transactions(budget_id):
            del self.transactions[txn.id]

    # Recurring rules
    def fetch_recurring_rules(self, budget_id):
        return sorted(
            (r for r in self.rules.values() if r.budget_id == budget_id),
            key=lambda r: (r.next_run_date, r.description),
        )

    def fetch_active_recurring_rules(self, budget_id):
        return [r for r in self.fetch_recurring_rules(budget_id) if r.is_active]

    def get_recurring_rule(self, rule_id):
        return self.rules.get(rule_id)

    def insert_recurring_rule(self, rule):
        self.rules[rule.id] = _clean(rule)

    def update_recurring_rule(self, rule):
        if rule.id not in self.rules:
            raise ValueError("Rule not found")
        self.rules[rule.id] = _clean(rule)

    def delete_recurring_rule(self, rule_id):
        self.rules.pop(rule_id, None)

    def delete_recurring_rules_for_budget(self, budget_id):
        for rule in self.fetch_recurring_rules(budget_id):
            del self.rules[rule.id]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def budget(store: InMemoryStore) -> BudgetRecord:
    record = BudgetRecord(name="Household")
    store.insert_budget(record)
    return record


@pytest.fixture
def add_rule(store: InMemoryStore, budget: BudgetRecord):
    def _add(
        next_run_date: date,
        frequency: Frequency = Frequency.monthly,
        amount: float = 1200,
        is_income: bool = True,
        description: str = "Salary",
        is_active: bool = True,
        category_id: Optional[UUID] = None,
    ) -> RecurringRuleRecord:
        rule = RecurringRuleRecord(
            budget_id=budget.id,
            description=description,
            amount=amount,
            is_income=is_income,
            frequency=frequency,
            next_run_date=next_run_date,
            category_id=category_id,
            is_active=is_active,
        )
        store.insert_recurring_rule(rule)
        return rule

    return _add
