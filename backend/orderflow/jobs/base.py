import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from orderflow.utils.clock import utcnow

log = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"


@dataclass
class JobRun:
    job: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    ok: bool = True
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "ok": self.ok,
            "result": self.result,
            "error": self.error,
        }


class ScanIncomplete(Exception):
    """A scan that ran to the end but some of its steps failed."""

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result


class PollingJob:
    """
    Lifecycle controller for one periodic scan.

    start() registers an interval job on the shared scheduler that fires once
    right away; stop() removes it and raises the cancel flag that scan loops
    poll between items. Runs of the same job never overlap: a run that finds
    the previous one still busy is skipped. Subclasses implement scan().
    """

    name = "polling-job"
    default_interval_seconds: float = 60

    def __init__(self, scheduler: BaseScheduler, interval_seconds: Optional[float] = None):
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds or self.default_interval_seconds
        self.state = JobState.STOPPED
        self._cancel = threading.Event()
        self._guard = threading.Lock()
        self.last_run: Optional[JobRun] = None

    @property
    def job_id(self) -> str:
        return f"orderflow:{self.name}"

    @property
    def processing(self) -> bool:
        return self._guard.locked()

    def should_stop(self) -> bool:
        return self._cancel.is_set()

    def start(self, interval_seconds: Optional[float] = None) -> bool:
        if self.state is JobState.RUNNING:
            log.warning("[%s] Job already running", self.name)
            return False
        if interval_seconds:
            self.interval_seconds = interval_seconds
        self._cancel.clear()
        self.scheduler.add_job(
            self.run_once,
            "interval",
            kwargs={"scheduled": True},
            seconds=self.interval_seconds,
            id=self.job_id,
            name=self.name,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
        )
        self.state = JobState.RUNNING
        log.info("[%s] Starting job with interval %ss", self.name, self.interval_seconds)
        return True

    def stop(self) -> bool:
        if self.state is JobState.STOPPED:
            log.warning("[%s] Job is not running", self.name)
            return False
        self._cancel.set()
        try:
            self.scheduler.remove_job(self.job_id)
        except JobLookupError:
            pass
        self.state = JobState.STOPPED
        log.info("[%s] Job stopped", self.name)
        return True

    def run_once(self, scheduled: bool = False) -> JobRun:
        started = utcnow()
        if not self._guard.acquire(blocking=False):
            log.warning("[%s] Previous run still in progress, skipping", self.name)
            return JobRun(job=self.name, started_at=started, finished_at=started, skipped=True)
        manual_while_stopped = not scheduled and self.state is JobState.STOPPED
        try:
            if scheduled and self.should_stop():
                # dispatched before stop() removed the job
                log.info("[%s] Job stopped, skipping scheduled run", self.name)
                return JobRun(job=self.name, started_at=started, finished_at=started, skipped=True)
            if manual_while_stopped:
                self._cancel.clear()
            run = JobRun(job=self.name, started_at=started)
            try:
                run.result = self.scan()
            except ScanIncomplete as exc:
                run.ok = False
                run.result = exc.result
                run.error = str(exc)
                log.error("[%s] Scan finished with errors: %s", self.name, exc)
            except Exception as exc:
                # the scheduler must keep firing; next run retries
                run.ok = False
                run.error = str(exc)
                log.exception("[%s] Scan failed", self.name)
            run.finished_at = utcnow()
            self.last_run = run
            return run
        finally:
            if manual_while_stopped and self.state is JobState.STOPPED:
                self._cancel.set()
            self._guard.release()

    def scan(self) -> Any:
        raise NotImplementedError

    def status(self) -> Dict[str, Any]:
        last = self.last_run
        return {
            "name": self.name,
            "state": self.state.value,
            "interval_seconds": self.interval_seconds,
            "processing": self.processing,
            "last_run_at": last.started_at.isoformat() if last else None,
            "last_result": last.to_dict() if last else None,
        }
