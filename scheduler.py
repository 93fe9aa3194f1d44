import logging
from datetime import date, datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from zoneinfo import ZoneInfo

from config import get_settings
from database import session_scope
from materializer import Materializer, StateSweeper, SyncError
from periods import Window, iter_month_windows
from recurrence import local_today
from stores import RuleStore


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def sync_job_id(owner_id: int, window: Window) -> str:
    return f"sync:{owner_id}:{window.start.isoformat()}:{window.end.isoformat()}"


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_sweep(self, source: str = "manual") -> None:
        logger.info(f"sweep_run: source={source}")
        try:
            with session_scope() as session:
                settled = StateSweeper(session).sweep_all(local_today())
        except Exception:
            logger.exception(f"sweep_run_failed: source={source}")
            return
        logger.info(f"sweep_run: source={source} settled={settled}")

    def _run_sync(self, owner_id: int, start: date, end: date, source: str) -> None:
        window = Window(start, end)
        logger.info(
            f"sync_run: source={source} owner={owner_id} "
            f"window={window.start}..{window.end}"
        )
        try:
            with session_scope() as session:
                Materializer(session).sync(
                    owner_id,
                    window,
                    timeout=self.settings.sync_timeout_secs,
                    commit=True,
                )
        except SyncError as exc:
            logger.warning(f"sync_run_skipped: source={source} owner={owner_id} {exc}")
        except Exception:
            logger.exception(f"sync_run_failed: source={source} owner={owner_id}")

    def _run_safety_net(self, source: str = "safety_net") -> None:
        today = local_today()
        months = 1 + max(self.settings.sync_months_ahead, 0)
        try:
            with session_scope() as session:
                owners = RuleStore(session).owners_with_active_rules()
        except Exception:
            logger.exception(f"safety_net_failed: source={source}")
            return
        for owner_id in owners:
            for window in iter_month_windows(today, months):
                self._run_sync(owner_id, window.start, window.end, source)

    def trigger_sync(self, owner_id: int, window: Window) -> str:
        """Queue a one-off sync, replacing any pending one for the same window."""
        job_id = sync_job_id(owner_id, window)
        self.scheduler.add_job(
            self._run_sync,
            DateTrigger(run_date=datetime.now(ZoneInfo(self.settings.timezone))),
            args=[owner_id, window.start, window.end, "on_demand"],
            id=job_id,
            replace_existing=True,
            misfire_grace_time=300,
        )
        return job_id

    def start(self, run_now: bool = True) -> None:
        if run_now:
            self._run_sweep("startup")

        trigger = CronTrigger(
            hour=self.settings.sweep_hour, minute=self.settings.sweep_minute
        )
        self.scheduler.add_job(
            self._run_sweep,
            trigger,
            args=["daily_sweep"],
            id="sweep_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(minutes=self.settings.safety_sync_minutes)
        self.scheduler.add_job(
            self._run_safety_net,
            trigger,
            args=["interval_safety_net"],
            id="sync_safety_net",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily sweep at "
            f"{self.settings.sweep_hour:02d}:{self.settings.sweep_minute:02d} "
            f"and {self.settings.safety_sync_minutes}-minute sync safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
