"""Timer Scheduler - Fires timer steps and delayed retries

Wraps an APScheduler BackgroundScheduler:
- One DateTrigger job per scheduled execution, keyed by execution id
- An interval job sweeping due and stalled executions (recovery after restarts)
"""
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import Settings, get_settings
from ..domain.errors import DomainError
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_context_logger, get_logger, set_correlation_id
from ..utils.time import ensure_utc

logger = get_logger(__name__)

FireCallback = Callable[[str, str], object]
PollCallback = Callable[[], int]

POLL_JOB_ID = "poll_due_executions"


class TimerScheduler:
    """
    Scheduling facility used by the orchestrator

    Responsibilities:
    - schedule_at(fire_at, instance_id, execution_id)
    - cancel(execution_id)
    - Sweep due executions at a fixed interval
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        scheduler: Optional[BackgroundScheduler] = None
    ):
        self.settings = settings or get_settings()
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._fire: Optional[FireCallback] = None
        self._poll: Optional[PollCallback] = None
        self._is_running = False

    def attach(self, fire: FireCallback, poll: Optional[PollCallback] = None) -> None:
        """Bind the callbacks invoked when an execution falls due"""
        self._fire = fire
        self._poll = poll

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        if self._poll is not None:
            self.scheduler.add_job(
                self._run_poll,
                trigger=IntervalTrigger(seconds=self.settings.timer_poll_interval_seconds),
                id=POLL_JOB_ID,
                name="Poll due executions",
                replace_existing=True
            )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Timer scheduler started",
            extra={"worker_id": self.settings.worker_id}
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self._is_running:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Timer scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running"""
        return self._is_running

    def schedule_at(self, fire_at: datetime, instance_id: str, execution_id: str) -> None:
        """Fire `execution_id` of `instance_id` at or after `fire_at`"""
        self.scheduler.add_job(
            self._run_fire,
            trigger=DateTrigger(run_date=ensure_utc(fire_at)),
            args=[instance_id, execution_id],
            id=execution_id,
            name=f"Fire {execution_id}",
            replace_existing=True,
            misfire_grace_time=None
        )
        logger.info(
            f"Scheduled {execution_id} at {fire_at.isoformat()}",
            extra={"instance_id": instance_id, "execution_id": execution_id}
        )

    def cancel(self, execution_id: str) -> None:
        """Drop the pending job of an execution, if any"""
        try:
            self.scheduler.remove_job(execution_id)
            logger.info(f"Cancelled scheduled fire of {execution_id}", extra={"execution_id": execution_id})
        except JobLookupError:
            logger.debug(f"No scheduled job for {execution_id}", extra={"execution_id": execution_id})

    def _run_fire(self, instance_id: str, execution_id: str) -> None:
        if self._fire is None:
            logger.error(f"No fire callback attached; dropping {execution_id}")
            return
        set_correlation_id(generate_correlation_id())
        log = get_context_logger(__name__, instance_id=instance_id, execution_id=execution_id)
        log.debug(f"Firing {execution_id}")
        try:
            self._fire(instance_id, execution_id)
        except DomainError as e:
            # The poll job retries anything still due
            log.error(f"Failed to fire {execution_id}: {e.message}")

    def _run_poll(self) -> None:
        set_correlation_id(generate_correlation_id())
        try:
            self._poll()
        except DomainError as e:
            logger.error(f"Due execution poll failed: {e.message}")
