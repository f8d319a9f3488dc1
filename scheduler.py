import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import session_scope
from recurrence import RecurringEngine
from store import PersistenceError, SqlStore


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Keeps every budget materialized for the current month.

    Host applications start it next to their UI so a session left open across
    a month boundary still sees the new month's recurring instances.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        created = 0
        with session_scope(self.session_factory) as session:
            store = SqlStore(session)
            engine = RecurringEngine(store)
            for budget in store.fetch_budgets():
                try:
                    report = engine.materialize_for_current_month(budget.id)
                except PersistenceError:
                    logger.exception(
                        f"scheduler_run: source={source} budget={budget.id} failed"
                    )
                    continue
                created += len(report.created)
        logger.info(f"scheduler_run: source={source} instances_created={created}")
        return created

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(day=1, hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["month_start"],
            id="recurring_month_start",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with month-start run and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
