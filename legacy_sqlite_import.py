"""Import a database written by the earlier mobile version of the tracker.

That build kept three tables (``budgets``, ``transactions``, ``recurring``)
with UUID text keys and dates stored as epoch seconds. Rows whose ids,
frequency or amount cannot be read are skipped with a warning; everything
else goes through the store so the usual sign normalization applies.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency
from schemas import BudgetRecord, RecurringRuleRecord, TransactionRecord
from store import LedgerStore


logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "budgets": {"id", "name"},
    "transactions": {"id", "budgetId", "date", "description", "amount", "isIncome"},
    "recurring": {
        "id",
        "budgetId",
        "description",
        "amount",
        "isIncome",
        "frequency",
        "nextRunDate",
    },
}


@dataclass(frozen=True)
class LegacyDBPreview:
    budgets_count: int
    transactions_count: int
    recurring_count: int
    min_transaction_date: Optional[date]
    max_transaction_date: Optional[date]
    warnings: list[str]


@dataclass
class LegacyImportResult:
    imported_budgets: int = 0
    imported_transactions: int = 0
    imported_recurring_rules: int = 0
    skipped_existing: int = 0
    skipped_malformed: int = 0
    warnings: list[str] = field(default_factory=list)


def _connect_readonly(path: Path) -> sqlite3.Connection:
    uri = f"file:{path.resolve()}?mode=ro"
    con = sqlite3.connect(uri, uri=True)
    con.row_factory = sqlite3.Row
    return con


def _require_legacy_schema(con: sqlite3.Connection) -> None:
    for table, cols in REQUIRED_COLUMNS.items():
        present = {row["name"] for row in con.execute(f"pragma table_info({table})")}
        if not present:
            raise ValueError(f"Legacy DB missing table: {table}")
        missing = cols - present
        if missing:
            raise ValueError(
                f"Legacy DB table '{table}' missing columns: {', '.join(sorted(missing))}"
            )


def _parse_uuid(value: object, what: str) -> UUID:
    try:
        return UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid {what} id: {value!r}") from exc


def _parse_epoch_date(value: object, tz: ZoneInfo) -> date:
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid legacy date: {value!r}") from exc
    if not math.isfinite(seconds):
        raise ValueError(f"Invalid legacy date: {value!r}")
    return datetime.fromtimestamp(seconds, tz).date()


def _parse_amount(value: object) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid legacy amount: {value!r}") from exc
    if amount == 0 or not math.isfinite(amount):
        raise ValueError(f"Invalid legacy amount: {value!r}")
    return amount


def _parse_frequency(value: object) -> Frequency:
    try:
        return Frequency(str(value).strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown legacy frequency: {value!r}") from exc


class LegacySQLiteImportService:
    def __init__(self, store: LedgerStore, timezone: Optional[str] = None) -> None:
        self.store = store
        self.tz = ZoneInfo(timezone or get_settings().timezone)

    def preview(self, legacy_db_path: Path) -> LegacyDBPreview:
        if not legacy_db_path.exists():
            raise ValueError("Legacy DB file not found")

        con = _connect_readonly(legacy_db_path)
        try:
            _require_legacy_schema(con)
            warnings: list[str] = []

            counts = {
                table: int(con.execute(f"select count(*) from {table}").fetchone()[0])
                for table in REQUIRED_COLUMNS
            }

            dates: list[date] = []
            for row in con.execute("select id, date from transactions"):
                try:
                    dates.append(_parse_epoch_date(row["date"], self.tz))
                except ValueError as exc:
                    warnings.append(f"Transaction {row['id']}: {exc}")

            unknown = sorted(
                {
                    str(row["frequency"])
                    for row in con.execute("select frequency from recurring")
                    if str(row["frequency"]).strip().lower()
                    not in {f.value for f in Frequency}
                }
            )
            if unknown:
                warnings.append(f"Unknown frequency value(s): {', '.join(unknown)}")

            return LegacyDBPreview(
                budgets_count=counts["budgets"],
                transactions_count=counts["transactions"],
                recurring_count=counts["recurring"],
                min_transaction_date=min(dates) if dates else None,
                max_transaction_date=max(dates) if dates else None,
                warnings=warnings,
            )
        finally:
            con.close()

    def _skip(self, result: LegacyImportResult, what: str, row_id, exc: Exception) -> None:
        message = f"Skipped legacy {what} {row_id!r}: {exc}"
        logger.warning(message)
        result.warnings.append(message)
        result.skipped_malformed += 1

    def commit(self, legacy_db_path: Path) -> LegacyImportResult:
        if not legacy_db_path.exists():
            raise ValueError("Legacy DB file not found")

        result = LegacyImportResult()
        con = _connect_readonly(legacy_db_path)
        try:
            _require_legacy_schema(con)
            known_budgets = {b.id for b in self.store.fetch_budgets()}

            with self.store.atomic():
                for row in con.execute("select id, name from budgets order by rowid"):
                    try:
                        budget = BudgetRecord(
                            id=_parse_uuid(row["id"], "budget"),
                            name=str(row["name"]).strip() or "Imported budget",
                        )
                    except ValueError as exc:
                        self._skip(result, "budget", row["id"], exc)
                        continue
                    if budget.id in known_budgets:
                        result.skipped_existing += 1
                        continue
                    self.store.insert_budget(budget)
                    known_budgets.add(budget.id)
                    result.imported_budgets += 1

                for row in con.execute("select * from transactions order by date"):
                    try:
                        txn = TransactionRecord(
                            id=_parse_uuid(row["id"], "transaction"),
                            budget_id=_parse_uuid(row["budgetId"], "budget"),
                            date=_parse_epoch_date(row["date"], self.tz),
                            description=str(row["description"]),
                            amount=_parse_amount(row["amount"]),
                            is_income=bool(row["isIncome"]),
                        )
                    except ValueError as exc:
                        self._skip(result, "transaction", row["id"], exc)
                        continue
                    if txn.budget_id not in known_budgets:
                        self._skip(
                            result, "transaction", row["id"], ValueError("unknown budget")
                        )
                        continue
                    if self.store.get_transaction(txn.id) is not None:
                        result.skipped_existing += 1
                        continue
                    self.store.insert_transaction(txn)
                    result.imported_transactions += 1

                for row in con.execute("select * from recurring"):
                    try:
                        rule = RecurringRuleRecord(
                            id=_parse_uuid(row["id"], "recurring rule"),
                            budget_id=_parse_uuid(row["budgetId"], "budget"),
                            description=str(row["description"]),
                            amount=_parse_amount(row["amount"]),
                            is_income=bool(row["isIncome"]),
                            frequency=_parse_frequency(row["frequency"]),
                            next_run_date=_parse_epoch_date(row["nextRunDate"], self.tz),
                        )
                    except ValueError as exc:
                        self._skip(result, "recurring rule", row["id"], exc)
                        continue
                    if rule.budget_id not in known_budgets:
                        self._skip(
                            result, "recurring rule", row["id"], ValueError("unknown budget")
                        )
                        continue
                    if self.store.get_recurring_rule(rule.id) is not None:
                        result.skipped_existing += 1
                        continue
                    self.store.insert_recurring_rule(rule)
                    result.imported_recurring_rules += 1
        finally:
            con.close()

        logger.info(
            f"legacy_import: budgets={result.imported_budgets} "
            f"transactions={result.imported_transactions} "
            f"rules={result.imported_recurring_rules} "
            f"skipped_existing={result.skipped_existing} "
            f"skipped_malformed={result.skipped_malformed}"
        )
        return result
