import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from recurrence import RecurringEngine
from services import recalculate_all_budgets


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_recurring(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=recurring source={source}")
        with session_scope() as session:
            posted = RecurringEngine(session).post_due()
            logger.info(
                f"scheduler_run: job=recurring source={source} expenses_posted={len(posted)}"
            )

    def _run_budget_thresholds(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=budget_thresholds source={source}")
        with session_scope() as session:
            results = recalculate_all_budgets(session)
        failed = sum(1 for r in results if not r["success"])
        logger.info(
            f"scheduler_run: job=budget_thresholds source={source} "
            f"budgets={len(results)} failed={failed}"
        )

    def start(self) -> None:
        self._run_recurring("startup")

        trigger = CronTrigger(hour=6, minute=0)
        self.scheduler.add_job(
            self._run_recurring,
            trigger,
            args=["daily_06:00"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = CronTrigger(hour=7, minute=0)
        self.scheduler.add_job(
            self._run_budget_thresholds,
            trigger,
            args=["daily_07:00"],
            id="budget_thresholds_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 06:00 recurring and 07:00 budget jobs")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
