import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from coordinator import ConsistencyCoordinator
from database import session_scope
from recurrence import RecurringEngine


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _post_recurring(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=recurring source={source}")
        with session_scope() as session:
            count = RecurringEngine(session).post_due()
            logger.info(f"scheduler_run: job=recurring source={source} occurrences_posted={count}")

    def _retry_pending(self) -> None:
        with session_scope() as session:
            ConsistencyCoordinator(session).retry_pending()

    def _reconcile(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=reconcile source={source}")
        with session_scope() as session:
            report = ConsistencyCoordinator(session).reconcile_all()
            logger.info(
                f"scheduler_run: job=reconcile source={source} "
                f"budgets={len(report.budgets_recomputed)} failures={len(report.failures)}"
            )

    def start(self) -> None:
        self._post_recurring("startup")

        trigger = CronTrigger(hour=self.settings.reconcile_hour, minute=0)
        self.scheduler.add_job(
            self._reconcile,
            trigger,
            args=[f"daily_{self.settings.reconcile_hour:02d}:00"],
            id="reconcile_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = CronTrigger(hour=self.settings.reconcile_hour, minute=15)
        self.scheduler.add_job(
            self._post_recurring,
            trigger,
            args=["daily"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(minutes=self.settings.retry_interval_minutes)
        self.scheduler.add_job(
            self._retry_pending,
            trigger,
            id="retry_pending",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started: reconcile at {self.settings.reconcile_hour:02d}:00, "
            f"retry every {self.settings.retry_interval_minutes} min"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
