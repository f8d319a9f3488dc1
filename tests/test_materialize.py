from datetime import date, timedelta

import pytest
from pydantic import ValidationError

from models import Frequency
from recurrence import MAX_CATCH_UP_OCCURRENCES, RecurringEngine
from schemas import BudgetRecord, TransactionRecord
from store import PersistenceError


TODAY = date(2024, 5, 15)
YESTERDAY = TODAY - timedelta(days=1)


def test_materialize_creates_instance_and_advances_rule(store, budget, add_rule):
    rule = add_rule(YESTERDAY, Frequency.monthly, amount=1200, is_income=True)

    report = RecurringEngine(store).materialize(budget.id, TODAY)

    assert report.ok
    assert report.rules_processed == 1
    txns = store.fetch_transactions(budget.id)
    assert len(txns) == 1
    assert txns[0].date == YESTERDAY
    assert txns[0].amount == 1200
    assert txns[0].is_recurring_instance
    assert txns[0].recurring_rule_id == rule.id
    assert store.get_recurring_rule(rule.id).next_run_date == date(2024, 6, 14)


def test_materialize_twice_does_not_duplicate(store, budget, add_rule):
    add_rule(YESTERDAY)
    engine = RecurringEngine(store)

    engine.materialize(budget.id, TODAY)
    second = engine.materialize(budget.id, TODAY)

    assert second.created == []
    assert len(store.fetch_transactions(budget.id)) == 1


def test_materialize_skips_dates_already_instantiated(store, budget, add_rule):
    rule = add_rule(date(2024, 5, 1), Frequency.weekly)
    store.insert_transaction(
        TransactionRecord(
            budget_id=budget.id,
            date=date(2024, 5, 8),
            description=rule.description,
            amount=rule.amount,
            is_income=rule.is_income,
            is_recurring_instance=True,
            recurring_rule_id=rule.id,
        )
    )

    report = RecurringEngine(store).materialize(budget.id, TODAY)

    assert [t.date for t in report.created] == [
        date(2024, 5, 1),
        date(2024, 5, 15),
        date(2024, 5, 22),
        date(2024, 5, 29),
    ]
    assert len(store.fetch_transactions(budget.id)) == 5
    assert store.get_recurring_rule(rule.id).next_run_date == date(2024, 6, 5)


def test_materialize_generates_remaining_days_of_month(store, budget, add_rule):
    add_rule(date(2024, 5, 27), Frequency.daily, amount=5, is_income=False)

    report = RecurringEngine(store).materialize(budget.id, TODAY)

    assert [t.date.day for t in report.created] == [27, 28, 29, 30, 31]
    assert all(t.amount == -5 for t in report.created)


def test_inactive_rule_is_ignored(store, budget, add_rule):
    rule = add_rule(YESTERDAY, is_active=False)

    report = RecurringEngine(store).materialize(budget.id, TODAY)

    assert report.rules_processed == 0
    assert store.fetch_transactions(budget.id) == []
    assert store.get_recurring_rule(rule.id).next_run_date == YESTERDAY


def test_rule_due_after_window_is_untouched(store, budget, add_rule):
    rule = add_rule(date(2024, 7, 1))

    report = RecurringEngine(store).materialize(budget.id, TODAY)

    assert report.created == []
    assert store.get_recurring_rule(rule.id).next_run_date == date(2024, 7, 1)


def test_stale_rule_only_fills_current_month_by_default(store, budget, add_rule):
    rule = add_rule(date(2024, 2, 10), Frequency.monthly)

    report = RecurringEngine(store, backfill_missed=False).materialize(
        budget.id, TODAY
    )

    assert [t.date for t in report.created] == [date(2024, 5, 10)]
    assert store.get_recurring_rule(rule.id).next_run_date == date(2024, 6, 10)


def test_backfill_materializes_missed_months(store, budget, add_rule):
    rule = add_rule(date(2024, 2, 10), Frequency.monthly)

    report = RecurringEngine(store, backfill_missed=True).materialize(
        budget.id, TODAY
    )

    assert [t.date for t in report.created] == [
        date(2024, 2, 10),
        date(2024, 3, 10),
        date(2024, 4, 10),
        date(2024, 5, 10),
    ]
    assert store.get_recurring_rule(rule.id).next_run_date == date(2024, 6, 10)


def test_backfill_is_capped(store, budget, add_rule):
    rule = add_rule(date(2020, 1, 1), Frequency.daily, amount=1, is_income=False)

    report = RecurringEngine(store, backfill_missed=True).materialize(
        budget.id, TODAY
    )

    assert len(report.created) == MAX_CATCH_UP_OCCURRENCES
    assert report.created[-1].date == date(2024, 5, 31)
    assert store.get_recurring_rule(rule.id).next_run_date == date(2024, 6, 1)


def test_expense_rule_amount_is_negative(store, budget, add_rule):
    rule = add_rule(YESTERDAY, amount=80, is_income=False, description="Internet")

    assert rule.amount == -80
    report = RecurringEngine(store).materialize(budget.id, TODAY)

    assert report.created[0].amount == -80
    assert not report.created[0].is_income


def test_zero_amount_is_rejected(budget):
    with pytest.raises(ValidationError):
        TransactionRecord(
            budget_id=budget.id,
            date=TODAY,
            description="Nothing",
            amount=0,
            is_income=False,
        )


def test_failing_rule_does_not_stop_the_others(store, budget, add_rule, monkeypatch):
    broken = add_rule(YESTERDAY, description="Broken")
    healthy = add_rule(YESTERDAY, description="Rent", amount=900, is_income=False)

    original_insert = store.insert_transaction

    def flaky_insert(txn):
        if txn.recurring_rule_id == broken.id:
            raise PersistenceError("disk full")
        original_insert(txn)

    monkeypatch.setattr(store, "insert_transaction", flaky_insert)

    report = RecurringEngine(store).materialize(budget.id, TODAY)

    assert not report.ok
    assert len(report.errors) == 1
    assert "Broken" in report.errors[0]
    assert [t.recurring_rule_id for t in report.created] == [healthy.id]
    assert store.get_recurring_rule(broken.id).next_run_date == YESTERDAY
    assert store.get_recurring_rule(healthy.id).next_run_date == date(2024, 6, 14)


def test_failed_rule_rolls_back_partial_instances(store, budget, add_rule, monkeypatch):
    rule = add_rule(date(2024, 5, 1), Frequency.weekly)
    original_insert = store.insert_transaction

    def fail_on_third(txn):
        if txn.date == date(2024, 5, 15):
            raise PersistenceError("constraint")
        original_insert(txn)

    monkeypatch.setattr(store, "insert_transaction", fail_on_third)

    report = RecurringEngine(store).materialize(budget.id, TODAY)

    assert report.errors
    assert store.fetch_transactions(budget.id) == []
    assert store.get_recurring_rule(rule.id).next_run_date == date(2024, 5, 1)


def test_invalid_month_reports_error(store, budget, add_rule):
    add_rule(YESTERDAY)

    report = RecurringEngine(store).materialize_month(budget.id, 2024, 13)

    assert not report.ok
    assert report.period is None
    assert report.created == []
    assert store.fetch_transactions(budget.id) == []


def test_store_warnings_are_reported(store, budget, add_rule):
    add_rule(YESTERDAY)
    store._warn("Skipped malformed recurring rule 'x': invalid frequency")

    report = RecurringEngine(store).materialize(budget.id, TODAY)

    assert report.ok
    assert report.warnings == ["Skipped malformed recurring rule 'x': invalid frequency"]
    assert len(report.created) == 1


def test_other_budgets_are_not_touched(store, budget, add_rule):
    add_rule(YESTERDAY)

    other = BudgetRecord(name="Side project")
    store.insert_budget(other)

    report = RecurringEngine(store).materialize(other.id, TODAY)

    assert report.created == []
    assert store.fetch_transactions(budget.id) == []


def test_materialize_for_current_month_uses_today(store, budget, add_rule):
    add_rule(YESTERDAY)

    report = RecurringEngine(store).materialize_for_current_month(budget.id, today=TODAY)

    assert report.period.slug == "2024-05"
    assert len(report.created) == 1


def test_calendar_overflow_is_reported_per_rule(store, budget, add_rule):
    first = add_rule(date(9999, 12, 30), Frequency.daily, description="Daily")
    second = add_rule(date(9999, 12, 31), Frequency.weekly, description="Weekly")

    report = RecurringEngine(store).materialize(budget.id, date(9999, 12, 15))

    assert len(report.errors) == 2
    assert report.created == []
    assert store.fetch_transactions(budget.id) == []
    assert store.get_recurring_rule(first.id).next_run_date == date(9999, 12, 30)
    assert store.get_recurring_rule(second.id).next_run_date == date(9999, 12, 31)
