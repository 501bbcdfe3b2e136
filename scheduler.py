import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select, union
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from models import DailyBalance, Transaction
from services import DailyBalanceService


logger = logging.getLogger(__name__)


def reconcile_all(session: Session) -> int:
    """Rebuild the daily balance snapshots of every user with ledger data."""
    user_ids = session.scalars(
        union(select(Transaction.user_id), select(DailyBalance.user_id))
    ).all()
    for user_id in user_ids:
        DailyBalanceService(session, user_id).rebuild()
    return len(user_ids)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = settings.reconcile_enabled
        self.hour = settings.reconcile_hour
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"reconcile_run: source={source}")
        with session_scope() as session:
            count = reconcile_all(session)
            logger.info(f"reconcile_run: source={source} users_rebuilt={count}")

    def start(self) -> None:
        if not self.enabled:
            logger.info("Daily balance reconciliation disabled")
            return

        trigger = CronTrigger(hour=self.hour, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{self.hour:02d}:15"],
            id="daily_balance_reconcile",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily {self.hour:02d}:15 reconciliation")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
