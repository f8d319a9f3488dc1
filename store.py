"""Persistence collaborator for the recurring engine and services.

``LedgerStore`` is the capability the engine is handed; ``SqlStore`` is the
SQLAlchemy implementation used by the application. Reads return validated
pydantic records. Rows that fail validation (unparseable ids, unknown
frequency values, zero amounts) are skipped and reported through
``pop_warnings()`` instead of failing the whole read.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Budget, Category, Frequency, RecurringRule, Transaction
from schemas import BudgetRecord, CategoryRecord, RecurringRuleRecord, TransactionRecord


logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class PersistenceError(RuntimeError):
    """A read or write against the backing store failed."""


class LedgerStore(ABC):
    def __init__(self) -> None:
        self._warnings: list[str] = []

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self._warnings.append(message)

    def pop_warnings(self) -> list[str]:
        """Return and clear warnings collected since the last call."""
        warnings, self._warnings = self._warnings, []
        return warnings

    @abstractmethod
    def atomic(self):
        """Context manager grouping writes into one unit.

        Everything written inside the block is kept on success and discarded
        when the block raises. Nested scopes join the outermost one.
        """

    # Budgets
    @abstractmethod
    def fetch_budgets(self) -> list[BudgetRecord]: ...

    @abstractmethod
    def get_budget(self, budget_id: UUID) -> Optional[BudgetRecord]: ...

    @abstractmethod
    def insert_budget(self, budget: BudgetRecord) -> None: ...

    @abstractmethod
    def delete_budget(self, budget_id: UUID) -> None: ...

    # Categories
    @abstractmethod
    def fetch_categories(self) -> list[CategoryRecord]: ...

    @abstractmethod
    def get_category(self, category_id: UUID) -> Optional[CategoryRecord]: ...

    @abstractmethod
    def insert_category(self, category: CategoryRecord) -> None: ...

    @abstractmethod
    def update_category(self, category: CategoryRecord) -> None: ...

    # Transactions
    @abstractmethod
    def fetch_transactions(self, budget_id: UUID) -> list[TransactionRecord]: ...

    @abstractmethod
    def get_transaction(self, transaction_id: UUID) -> Optional[TransactionRecord]: ...

    @abstractmethod
    def insert_transaction(self, transaction: TransactionRecord) -> None: ...

    @abstractmethod
    def update_transaction(self, transaction: TransactionRecord) -> None: ...

    @abstractmethod
    def delete_transaction(self, transaction_id: UUID) -> None: ...

    @abstractmethod
    def delete_transactions_for_budget(self, budget_id: UUID) -> None: ...

    # Recurring rules
    @abstractmethod
    def fetch_recurring_rules(self, budget_id: UUID) -> list[RecurringRuleRecord]: ...

    @abstractmethod
    def fetch_active_recurring_rules(
        self, budget_id: UUID
    ) -> list[RecurringRuleRecord]: ...

    @abstractmethod
    def get_recurring_rule(self, rule_id: UUID) -> Optional[RecurringRuleRecord]: ...

    @abstractmethod
    def insert_recurring_rule(self, rule: RecurringRuleRecord) -> None: ...

    @abstractmethod
    def update_recurring_rule(self, rule: RecurringRuleRecord) -> None: ...

    @abstractmethod
    def delete_recurring_rule(self, rule_id: UUID) -> None: ...

    @abstractmethod
    def delete_recurring_rules_for_budget(self, budget_id: UUID) -> None: ...


def _columns(record: BaseModel) -> dict[str, object]:
    # Re-validating applies the sign normalization even to records built with
    # model_copy(), which skips validators.
    record = type(record).model_validate(record.model_dump())
    values: dict[str, object] = {}
    for key, value in record.model_dump().items():
        if isinstance(value, UUID):
            value = str(value)
        elif isinstance(value, Frequency):
            value = value.value
        values[key] = value
    return values


def _describe(exc: ValidationError) -> str:
    return ", ".join(
        ".".join(str(part) for part in error["loc"]) or "record"
        for error in exc.errors()
    )


class SqlStore(LedgerStore):
    def __init__(self, session: Session) -> None:
        super().__init__()
        self.session = session
        self._depth = 0

    @contextmanager
    def atomic(self) -> Iterator[None]:
        self._depth += 1
        outermost = self._depth == 1
        try:
            yield
            if outermost:
                self.session.commit()
        except SQLAlchemyError as exc:
            if outermost:
                self.session.rollback()
            raise PersistenceError(f"Store transaction failed: {exc}") from exc
        except Exception:
            if outermost:
                self.session.rollback()
            raise
        finally:
            self._depth -= 1

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
            self.session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{action} failed: {exc}") from exc

    def _load(self, model: type[RecordT], rows, kind: str) -> list[RecordT]:
        records: list[RecordT] = []
        for row in rows:
            try:
                records.append(model.model_validate(row))
            except ValidationError as exc:
                self._warn(f"Skipped malformed {kind} {row.id!r}: invalid {_describe(exc)}")
        return records

    def _load_one(
        self, model: type[RecordT], row, kind: str
    ) -> Optional[RecordT]:
        if row is None:
            return None
        loaded = self._load(model, [row], kind)
        return loaded[0] if loaded else None

    def _scalars(self, stmt, action: str) -> list:
        try:
            return list(self.session.scalars(stmt))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{action} failed: {exc}") from exc

    def _get(self, orm_cls, key: UUID):
        try:
            return self.session.get(orm_cls, str(key))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Load {orm_cls.__tablename__} failed: {exc}") from exc

    def _update(self, orm_cls, record: BaseModel, missing: str) -> None:
        with self._guard(f"Update {orm_cls.__tablename__}"):
            row = self.session.get(orm_cls, str(record.id))
            if row is None:
                raise ValueError(missing)
            for field, value in _columns(record).items():
                setattr(row, field, value)

    # Budgets
    def fetch_budgets(self) -> list[BudgetRecord]:
        stmt = select(Budget).order_by(Budget.created_at, Budget.name)
        return self._load(BudgetRecord, self._scalars(stmt, "Fetch budgets"), "budget")

    def get_budget(self, budget_id: UUID) -> Optional[BudgetRecord]:
        return self._load_one(BudgetRecord, self._get(Budget, budget_id), "budget")

    def insert_budget(self, budget: BudgetRecord) -> None:
        with self._guard("Insert budget"):
            self.session.add(Budget(**_columns(budget)))

    def delete_budget(self, budget_id: UUID) -> None:
        with self._guard("Delete budget"):
            self.session.execute(delete(Budget).where(Budget.id == str(budget_id)))

    # Categories
    def fetch_categories(self) -> list[CategoryRecord]:
        stmt = select(Category).order_by(Category.type, Category.name)
        return self._load(
            CategoryRecord, self._scalars(stmt, "Fetch categories"), "category"
        )

    def get_category(self, category_id: UUID) -> Optional[CategoryRecord]:
        return self._load_one(
            CategoryRecord, self._get(Category, category_id), "category"
        )

    def insert_category(self, category: CategoryRecord) -> None:
        with self._guard("Insert category"):
            self.session.add(Category(**_columns(category)))

    def update_category(self, category: CategoryRecord) -> None:
        self._update(Category, category, "Category not found")

    # Transactions
    def fetch_transactions(self, budget_id: UUID) -> list[TransactionRecord]:
        stmt = (
            select(Transaction)
            .where(Transaction.budget_id == str(budget_id))
            .order_by(Transaction.date, Transaction.created_at)
        )
        return self._load(
            TransactionRecord, self._scalars(stmt, "Fetch transactions"), "transaction"
        )

    def get_transaction(self, transaction_id: UUID) -> Optional[TransactionRecord]:
        return self._load_one(
            TransactionRecord, self._get(Transaction, transaction_id), "transaction"
        )

    def insert_transaction(self, transaction: TransactionRecord) -> None:
        with self._guard("Insert transaction"):
            self.session.add(Transaction(**_columns(transaction)))

    def update_transaction(self, transaction: TransactionRecord) -> None:
        self._update(Transaction, transaction, "Transaction not found")

    def delete_transaction(self, transaction_id: UUID) -> None:
        with self._guard("Delete transaction"):
            self.session.execute(
                delete(Transaction).where(Transaction.id == str(transaction_id))
            )

    def delete_transactions_for_budget(self, budget_id: UUID) -> None:
        with self._guard("Delete budget transactions"):
            self.session.execute(
                delete(Transaction).where(Transaction.budget_id == str(budget_id))
            )

    # Recurring rules
    def fetch_recurring_rules(self, budget_id: UUID) -> list[RecurringRuleRecord]:
        stmt = (
            select(RecurringRule)
            .where(RecurringRule.budget_id == str(budget_id))
            .order_by(RecurringRule.next_run_date, RecurringRule.description)
        )
        return self._load(
            RecurringRuleRecord, self._scalars(stmt, "Fetch rules"), "recurring rule"
        )

    def fetch_active_recurring_rules(
        self, budget_id: UUID
    ) -> list[RecurringRuleRecord]:
        stmt = (
            select(RecurringRule)
            .where(
                RecurringRule.budget_id == str(budget_id),
                RecurringRule.is_active.is_(True),
            )
            .order_by(RecurringRule.next_run_date, RecurringRule.description)
        )
        return self._load(
            RecurringRuleRecord,
            self._scalars(stmt, "Fetch active rules"),
            "recurring rule",
        )

    def get_recurring_rule(self, rule_id: UUID) -> Optional[RecurringRuleRecord]:
        return self._load_one(
            RecurringRuleRecord, self._get(RecurringRule, rule_id), "recurring rule"
        )

    def insert_recurring_rule(self, rule: RecurringRuleRecord) -> None:
        with self._guard("Insert rule"):
            self.session.add(RecurringRule(**_columns(rule)))

    def update_recurring_rule(self, rule: RecurringRuleRecord) -> None:
        self._update(RecurringRule, rule, "Rule not found")

    def delete_recurring_rule(self, rule_id: UUID) -> None:
        with self._guard("Delete rule"):
            self.session.execute(
                delete(RecurringRule).where(RecurringRule.id == str(rule_id))
            )

    def delete_recurring_rules_for_budget(self, budget_id: UUID) -> None:
        with self._guard("Delete budget rules"):
            self.session.execute(
                delete(RecurringRule).where(RecurringRule.budget_id == str(budget_id))
            )
