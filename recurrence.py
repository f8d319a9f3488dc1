import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency
from periods import Period, days_in_month, month_period, month_period_for
from schemas import RecurringRuleRecord, TransactionRecord, normalize_amount
from store import LedgerStore, PersistenceError


logger = logging.getLogger(__name__)

# Upper bound on instances created for one rule in one pass when back-filling
# a stale rule (a daily rule left alone for ~3 years).
MAX_CATCH_UP_OCCURRENCES = 1000

_FIXED_STEPS = {
    Frequency.daily: timedelta(days=1),
    Frequency.weekly: timedelta(days=7),
    Frequency.biweekly: timedelta(days=14),
}

_rule_locks: dict[tuple[UUID, UUID], threading.Lock] = {}
_rule_locks_guard = threading.Lock()


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def step(frequency: Frequency, from_date: date) -> date:
    """Return the occurrence following ``from_date`` for ``frequency``.

    Month and year steps clamp the day to the target month's length, so
    Jan 31 steps to the last day of February and Feb 29 steps to Feb 28.
    """
    if frequency in _FIXED_STEPS:
        return from_date + _FIXED_STEPS[frequency]
    if frequency == Frequency.monthly:
        return add_months(from_date, 1)
    return add_months(from_date, 12)


def occurrences(
    rule: RecurringRuleRecord, window_start: date, window_end: date
) -> list[date]:
    """Due dates of ``rule`` inside ``[window_start, window_end]``, ascending.

    Nothing before ``rule.next_run_date`` is emitted. A ``next_run_date``
    older than the window is stepped forward along the rule's own cadence
    rather than restarted at ``window_start``.
    """
    current = rule.next_run_date
    while current < window_start:
        current = step(rule.frequency, current)

    due: list[date] = []
    while current <= window_end:
        due.append(current)
        current = step(rule.frequency, current)
    return due


def next_run_after(frequency: Frequency, start: date, window_end: date) -> date:
    current = start
    while current <= window_end:
        current = step(frequency, current)
    return current


@contextmanager
def _rule_lock(budget_id: UUID, rule_id: UUID) -> Iterator[None]:
    with _rule_locks_guard:
        lock = _rule_locks.setdefault((budget_id, rule_id), threading.Lock())
    with lock:
        yield


def _drop_rule_locks(budget_id: UUID, rule_id: Optional[UUID] = None) -> None:
    with _rule_locks_guard:
        stale = [
            key
            for key in _rule_locks
            if key[0] == budget_id and (rule_id is None or key[1] == rule_id)
        ]
        for key in stale:
            del _rule_locks[key]


@dataclass
class MaterializationReport:
    budget_id: UUID
    period: Optional[Period] = None
    created: list[TransactionRecord] = field(default_factory=list)
    rules_processed: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class RecurringEngine:
    def __init__(
        self, store: LedgerStore, *, backfill_missed: Optional[bool] = None
    ) -> None:
        self.store = store
        if backfill_missed is None:
            backfill_missed = get_settings().backfill_missed
        self.backfill_missed = backfill_missed

    # Materialization

    def materialize_for_current_month(
        self, budget_id: UUID, today: Optional[date] = None
    ) -> MaterializationReport:
        return self.materialize(budget_id, today or local_today())

    def materialize(self, budget_id: UUID, as_of: date) -> MaterializationReport:
        return self.materialize_month(budget_id, as_of.year, as_of.month)

    def materialize_month(
        self, budget_id: UUID, year: int, month: int
    ) -> MaterializationReport:
        report = MaterializationReport(budget_id=budget_id)
        try:
            period = month_period(year, month)
        except ValueError as exc:
            logger.error(f"materialize: budget={budget_id} window_error={exc}")
            report.errors.append(str(exc))
            return report
        report.period = period

        rules = self.store.fetch_active_recurring_rules(budget_id)
        report.warnings.extend(self.store.pop_warnings())

        for rule in rules:
            if not rule.is_active or rule.budget_id != budget_id:
                continue
            try:
                created = self._materialize_rule(rule, period)
            except (PersistenceError, ValueError, OverflowError) as exc:
                logger.exception(
                    f"materialize: budget={budget_id} rule={rule.id} failed"
                )
                report.errors.append(f"Rule {rule.id} ({rule.description}): {exc}")
                continue
            report.rules_processed += 1
            report.created.extend(created)

        report.warnings.extend(self.store.pop_warnings())
        logger.info(
            f"materialize: budget={budget_id} period={period.slug} "
            f"rules={report.rules_processed} created={len(report.created)} "
            f"warnings={len(report.warnings)} errors={len(report.errors)}"
        )
        return report

    def _materialize_rule(
        self, rule: RecurringRuleRecord, period: Period
    ) -> list[TransactionRecord]:
        with _rule_lock(rule.budget_id, rule.id), self.store.atomic():
            start = period.start
            if rule.next_run_date < period.start:
                if self.backfill_missed:
                    start = rule.next_run_date
                else:
                    logger.info(
                        f"materialize: rule={rule.id} stale next_run_date="
                        f"{rule.next_run_date} skipping occurrences before {period.start}"
                    )

            due = occurrences(rule, start, period.end)
            if len(due) > MAX_CATCH_UP_OCCURRENCES:
                logger.warning(
                    f"materialize: rule={rule.id} due={len(due)} "
                    f"capped_to={MAX_CATCH_UP_OCCURRENCES}"
                )
                due = due[-MAX_CATCH_UP_OCCURRENCES:]

            taken = {
                txn.date
                for txn in self.store.fetch_transactions(rule.budget_id)
                if txn.is_recurring_instance and txn.recurring_rule_id == rule.id
            }
            created: list[TransactionRecord] = []
            for occurrence in due:
                if occurrence in taken:
                    continue
                txn = TransactionRecord(
                    budget_id=rule.budget_id,
                    date=occurrence,
                    description=rule.description,
                    amount=rule.amount,
                    is_income=rule.is_income,
                    category_id=rule.category_id,
                    is_recurring_instance=True,
                    recurring_rule_id=rule.id,
                )
                self.store.insert_transaction(txn)
                taken.add(occurrence)
                created.append(txn)

            next_run = next_run_after(
                rule.frequency, due[-1] if due else rule.next_run_date, period.end
            )
            if next_run != rule.next_run_date:
                self.store.update_recurring_rule(
                    rule.model_copy(update={"next_run_date": next_run})
                )
        return created

    # Reconciliation

    def _instances_in_window(
        self, rule: RecurringRuleRecord, window_start: date, window_end: date
    ) -> list[TransactionRecord]:
        return [
            txn
            for txn in self.store.fetch_transactions(rule.budget_id)
            if txn.is_recurring_instance
            and txn.recurring_rule_id == rule.id
            and window_start <= txn.date <= window_end
        ]

    def reconcile(
        self,
        old_rule: RecurringRuleRecord,
        new_rule: RecurringRuleRecord,
        window_start: date,
        window_end: date,
    ) -> Optional[MaterializationReport]:
        """Bring the rule's instances inside the window in line with an edit.

        ``new_rule`` must already be saved. A frequency change removes the
        window's instances and regenerates them; the report of that
        regeneration is returned. Any other edit patches the instances in
        place and returns ``None``.

        The window must lie inside one calendar month, the unit that
        regeneration works in.
        """
        if window_start > window_end or (window_start.year, window_start.month) != (
            window_end.year,
            window_end.month,
        ):
            raise ValueError(
                f"Reconcile window must lie within one month: {window_start}..{window_end}"
            )
        new_rule = RecurringRuleRecord.model_validate(new_rule.model_dump())

        if old_rule.frequency != new_rule.frequency:
            with _rule_lock(new_rule.budget_id, new_rule.id), self.store.atomic():
                removed = self._instances_in_window(new_rule, window_start, window_end)
                for txn in removed:
                    self.store.delete_transaction(txn.id)
                if removed and new_rule.next_run_date == old_rule.next_run_date:
                    anchor = min(txn.date for txn in removed)
                    self.store.update_recurring_rule(
                        new_rule.model_copy(update={"next_run_date": anchor})
                    )
            logger.info(
                f"reconcile: rule={new_rule.id} frequency "
                f"{old_rule.frequency.value}->{new_rule.frequency.value} "
                f"removed={len(removed)}"
            )
            return self.materialize(new_rule.budget_id, window_start)

        with _rule_lock(new_rule.budget_id, new_rule.id), self.store.atomic():
            instances = self._instances_in_window(new_rule, window_start, window_end)
            for txn in instances:
                self.store.update_transaction(
                    txn.model_copy(
                        update={
                            "description": new_rule.description,
                            "amount": normalize_amount(
                                new_rule.amount, new_rule.is_income
                            ),
                            "is_income": new_rule.is_income,
                            "category_id": new_rule.category_id,
                        }
                    )
                )
        logger.info(f"reconcile: rule={new_rule.id} patched={len(instances)}")
        return None

    def apply_rule_edit(
        self,
        old_rule: RecurringRuleRecord,
        new_rule: RecurringRuleRecord,
        today: Optional[date] = None,
    ) -> Optional[MaterializationReport]:
        if old_rule.id != new_rule.id or old_rule.budget_id != new_rule.budget_id:
            raise ValueError("Rule identity cannot change")
        new_rule = RecurringRuleRecord.model_validate(new_rule.model_dump())
        period = month_period_for(today or local_today())

        with self.store.atomic():
            if self.store.get_recurring_rule(new_rule.id) is None:
                raise ValueError("Rule not found")
            self.store.update_recurring_rule(new_rule)
        return self.reconcile(old_rule, new_rule, period.start, period.end)

    def delete_rule(self, rule_id: UUID) -> None:
        # Instances already materialized stay behind as ordinary history.
        with self.store.atomic():
            rule = self.store.get_recurring_rule(rule_id)
            if rule is None:
                raise ValueError("Rule not found")
            self.store.delete_recurring_rule(rule_id)
        _drop_rule_locks(rule.budget_id, rule_id)
        logger.info(f"delete_rule: rule={rule_id} budget={rule.budget_id}")

    def delete_budget(self, budget_id: UUID) -> None:
        with self.store.atomic():
            if self.store.get_budget(budget_id) is None:
                raise ValueError("Budget not found")
            self.store.delete_transactions_for_budget(budget_id)
            self.store.delete_recurring_rules_for_budget(budget_id)
            self.store.delete_budget(budget_id)
        _drop_rule_locks(budget_id)
        logger.info(f"delete_budget: budget={budget_id}")
