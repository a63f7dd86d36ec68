import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from config import get_settings
from database import session_scope
from errors import NotFoundError, UpstreamFeedError, ValidationError
from services import ConnectedAccountService, ImportService, PeriodService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.sync_interval_hours = settings.sync_interval_hours
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _ensure_period(self, source: str = "manual") -> None:
        with session_scope() as session:
            seeded = PeriodService(session).ensure_current_period()
        logger.info(f"period_check: source={source} carried_forward={seeded}")

    def _sync_accounts(self, source: str = "manual") -> None:
        with session_scope() as session:
            account_ids = [a.id for a in ConnectedAccountService(session).due_for_sync()]
        logger.info(f"sync_run: source={source} accounts={len(account_ids)}")
        for account_id in account_ids:
            # One session per account so a failure leaves the others untouched.
            with session_scope() as session:
                try:
                    result = ImportService(session).sync(account_id)
                except (UpstreamFeedError, ValidationError, NotFoundError) as exc:
                    logger.error(f"sync_run_failed: account_id={account_id} error={exc}")
                    continue
                except SQLAlchemyError:
                    session.rollback()
                    logger.exception(f"sync_run_storage_failed: account_id={account_id}")
                    continue
            logger.info(
                f"sync_run: account_id={account_id} synced={result.synced} "
                f"skipped={result.skipped} errors={len(result.errors)}"
            )

    def start(self) -> None:
        self._ensure_period("startup")

        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self._ensure_period,
            trigger,
            args=["daily_00:05"],
            id="period_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        if self.sync_interval_hours > 0:
            trigger = IntervalTrigger(hours=self.sync_interval_hours)
            self.scheduler.add_job(
                self._sync_accounts,
                trigger,
                args=[f"every_{self.sync_interval_hours}h"],
                id="bank_sync",
                replace_existing=True,
                misfire_grace_time=600,
            )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily period check and sync every "
            f"{self.sync_interval_hours}h"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
