"""
Scheduler service using APScheduler.

Runs one cron job that polls the database for due scheduled analyses
every minute and dispatches each of them, one after the other. Also
provides:
- Start/stop lifecycle with signal handling
- Job event logging
- PID and info files for status tracking from the CLI

The tick handler can be called directly with an explicit timestamp,
which is how the ``tick`` CLI command and the tests drive it.
"""

import atexit
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import (
    EVENT_JOB_EXECUTED,
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    EVENT_JOB_MAX_INSTANCES,
)

from analysis_scheduler.client import ExecutionClient
from analysis_scheduler.config import SchedulerConfig
from analysis_scheduler.errors import ConfigError, SchedulerError, StoreError
from analysis_scheduler.models import ScheduledAnalysis, utcnow
from analysis_scheduler.processor import (
    AnalysisProcessor,
    ProcessResult,
    OUTCOME_DISPATCHED,
    OUTCOME_ERROR,
    OUTCOME_SKIPPED,
)
from analysis_scheduler.publisher import DispatchPublisher
from analysis_scheduler.store import ScheduleStore

logger = logging.getLogger(__name__)

POLL_JOB_ID = 'process_due_analyses'


def _get_pid_file_path(data_dir: Path) -> Path:
    """Get the path to the scheduler PID file."""
    return data_dir / "scheduler.pid"


def _get_info_file_path(data_dir: Path) -> Path:
    """Get the path to the scheduler info file."""
    return data_dir / "scheduler_info.json"


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_scheduler_running(data_dir: Path) -> tuple[bool, Optional[int]]:
    """
    Check if the scheduler is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = _get_pid_file_path(data_dir)

    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
        if _is_process_running(pid):
            return True, pid
        else:
            # Stale PID file, clean it up
            pid_file.unlink()
            return False, None
    except (ValueError, OSError):
        return False, None


def get_scheduler_info(data_dir: Path) -> Optional[Dict[str, Any]]:
    """
    Get information about the running scheduler.

    Returns:
        Dict with scheduler info or None if not running.
    """
    running, pid = is_scheduler_running(data_dir)
    if not running:
        return None

    info_file = _get_info_file_path(data_dir)
    try:
        with open(info_file, 'r') as f:
            info = json.load(f)
    except (json.JSONDecodeError, OSError):
        info = {'data_dir': str(data_dir)}
    info['running'] = True
    info['pid'] = pid
    return info


@dataclass
class TickSummary:
    """Counts for one poll of the database"""
    started_at: datetime
    found: int = 0
    dispatched: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None  # Set when the due query itself failed
    results: List[ProcessResult] = field(default_factory=list)

    def record(self, result: ProcessResult):
        self.results.append(result)
        if result.outcome == OUTCOME_DISPATCHED:
            self.dispatched += 1
        elif result.outcome == OUTCOME_SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def __str__(self):
        if self.error:
            return f"tick at {self.started_at.isoformat()}: discovery failed ({self.error})"
        return (
            f"tick at {self.started_at.isoformat()}: found={self.found} "
            f"dispatched={self.dispatched} skipped={self.skipped} failed={self.failed}"
        )


class SchedulerService:
    """
    Main scheduler service.

    Owns the schedule store, the execution API client and the queue
    publisher for the lifetime of the process and drives them from a
    single APScheduler cron job.
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        store: Optional[ScheduleStore] = None,
        client: Optional[ExecutionClient] = None,
        publisher: Optional[DispatchPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
        foreground: bool = False
    ):
        """
        Initialize scheduler service.

        Args:
            config: Scheduler configuration (loaded from the environment if None)
            store: Schedule store (built from config if None)
            client: Execution API client (built from config if None)
            publisher: Queue publisher (built from config if None)
            clock: Returns the current naive UTC time
            foreground: If True, use blocking scheduler (for foreground mode)
        """
        self.config = config or SchedulerConfig.from_env()
        self.clock = clock
        self.foreground = foreground

        self.store = store or ScheduleStore(self.config.database.dsn)
        self.client = client or ExecutionClient(self.config.api)
        self.publisher = publisher or DispatchPublisher(self.config.amqp)
        self.processor = AnalysisProcessor(
            self.store,
            self.client,
            self.publisher,
            claim_lease=timedelta(seconds=self.config.claim_lease_seconds)
        )

        job_defaults = {
            'coalesce': True,  # Combine multiple missed runs into one
            'max_instances': 1,  # Never overlap ticks within this process
            'misfire_grace_time': 30
        }

        if foreground:
            self.scheduler = BlockingScheduler(job_defaults=job_defaults, timezone='UTC')
        else:
            self.scheduler = BackgroundScheduler(job_defaults=job_defaults, timezone='UTC')

        self._setup_event_listeners()

        logger.info(f"Scheduler initialized: {self.config!r}")

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.debug(f"Job '{event.job_id}' executed: {event.retval}")

        def job_error_listener(event):
            logger.error(
                f"Job '{event.job_id}' raised exception: {event.exception}",
                exc_info=event.exception
            )

        def job_missed_listener(event):
            logger.warning(f"Job '{event.job_id}' missed scheduled run time")

        def job_max_instances_listener(event):
            logger.warning(f"Job '{event.job_id}' skipped, previous tick is still running")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop(wait=False)
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def find_due_analyses(self, now: Optional[datetime] = None) -> List[ScheduledAnalysis]:
        """List analyses that are due, without dispatching them."""
        return self.store.find_due_analyses(now or self.clock())

    def tick(self, now: Optional[datetime] = None) -> TickSummary:
        """
        Poll for due analyses and process each one sequentially.

        Args:
            now: Fixed tick time. If None, the clock is read once for the
                discovery query and again for every analysis.

        Returns:
            TickSummary for this poll
        """
        started_at = now or self.clock()
        summary = TickSummary(started_at=started_at)

        logger.info("Checking for due scheduled analyses...")
        try:
            analyses = self.store.find_due_analyses(started_at)
        except StoreError as e:
            logger.error(f"Error fetching due analyses: {e}")
            summary.error = str(e)
            return summary

        summary.found = len(analyses)
        logger.info(f"Found {len(analyses)} due analyses")

        for analysis in analyses:
            item_now = now or self.clock()
            try:
                result = self.processor.process(analysis, item_now)
            except Exception as e:
                logger.error(f"[analysis:{analysis.id}] Unexpected error: {e}", exc_info=True)
                result = ProcessResult(analysis.id, OUTCOME_ERROR, error=str(e))
            summary.record(result)

        if analyses:
            logger.info(str(summary))
        return summary

    def start(self):
        """
        Register the poll job and start the scheduler.

        In foreground mode this blocks until the scheduler is shut down.

        Raises:
            ConfigError: If the configuration is invalid
            SchedulerError: If the poll job cannot be registered
        """
        errors = self.config.validate()
        if errors:
            logger.error("Configuration validation failed:")
            for error in errors:
                logger.error(f"  - {error}")
            raise ConfigError("Invalid configuration")

        running, pid = is_scheduler_running(self.config.data_dir)
        if running and pid != os.getpid():
            logger.warning(f"Scheduler is already running (PID: {pid})")
            return

        if self.scheduler.running:
            logger.warning("Scheduler is already running")
            return

        logger.info("Starting scheduler service...")

        try:
            self.scheduler.add_job(
                self.tick,
                CronTrigger(second=self.config.poll_second, timezone='UTC'),
                id=POLL_JOB_ID,
                name="Process due scheduled analyses",
                replace_existing=True
            )
        except Exception as e:
            raise SchedulerError(f"Failed to add poll job: {e}") from e

        self._write_pid_file()

        if self.foreground:
            self._setup_signal_handlers()
            logger.info("Scheduler service started successfully")
            self.scheduler.start()
        else:
            self.scheduler.start()
            job = self.scheduler.get_job(POLL_JOB_ID)
            logger.info(f"Scheduler service started successfully, next poll at {job.next_run_time}")

    def _write_pid_file(self):
        """Write the current process PID and scheduler info files."""
        data_dir = self.config.data_dir
        data_dir.mkdir(parents=True, exist_ok=True)

        pid_file = _get_pid_file_path(data_dir)
        pid_file.write_text(str(os.getpid()))
        logger.debug(f"Wrote PID file: {pid_file}")

        info_file = _get_info_file_path(data_dir)
        scheduler_info = {
            'pid': os.getpid(),
            'started_at': datetime.now().isoformat(),
            'queue': self.config.amqp.queue,
            'api_base_url': self.config.api.base_url,
            'poll_second': self.config.poll_second,
            'claim_lease_seconds': self.config.claim_lease_seconds,
            'data_dir': str(data_dir),
            'log_file': self.config.logging.file,
        }

        try:
            with open(info_file, 'w') as f:
                json.dump(scheduler_info, f, indent=2)
            logger.debug(f"Wrote scheduler info file: {info_file}")
        except OSError as e:
            logger.warning(f"Failed to write scheduler info file: {e}")

        # Register cleanup on exit
        atexit.register(self._remove_pid_file)

    def _remove_pid_file(self):
        """Remove the PID and info files."""
        for path in (_get_pid_file_path(self.config.data_dir), _get_info_file_path(self.config.data_dir)):
            try:
                if path.exists():
                    path.unlink()
                    logger.debug(f"Removed {path}")
            except OSError as e:
                logger.debug(f"Failed to remove {path}: {e}")

    def stop(self, wait: bool = True):
        """
        Stop the scheduler.

        Args:
            wait: If True, wait for a running tick to complete
        """
        if self.scheduler.running:
            logger.info("Stopping scheduler...")
            self.scheduler.shutdown(wait=wait)
            self._remove_pid_file()
            logger.info("Scheduler stopped")
        else:
            logger.warning("Scheduler is not running")

    def is_running(self) -> bool:
        return self.scheduler.running

    def next_poll_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(POLL_JOB_ID)
        if not job:
            return None
        return job.next_run_time

    def close(self):
        """Release the database, HTTP and broker connections."""
        self.publisher.close()
        self.client.close()
        self.store.close()
