"""
Batch Scheduler Module
Background jobs that drain the sync queue and run periodic squad syncs.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from kaos_sync.config_manager import ConfigManager
from kaos_sync.database.connection import DatabaseConnection, get_db
from kaos_sync.database.models import Squad, SquadSyncConfig, SyncMode
from kaos_sync.rate_limiter import RateLimiter, get_rate_limiter
from kaos_sync.sync_orchestrator import SyncOrchestrator
from kaos_sync.sync_queue import SyncQueue
from kaos_sync.utils.helpers import utcnow
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)

QUEUE_JOB_ID = 'process_sync_queue'


@dataclass
class BatchResult:
    """Summary of one process_queue run."""
    processed: int = 0
    errors: int = 0
    skipped: bool = False
    stopped_for_quota: bool = False
    remaining_quota: int = 0

    def to_dict(self) -> Dict:
        return {
            'processed': self.processed,
            'errors': self.errors,
            'skipped': self.skipped,
            'stopped_for_quota': self.stopped_for_quota,
            'remaining_quota': self.remaining_quota
        }


@dataclass
class SquadSyncSummary:
    """Summary of one periodic sync over all active squads."""
    mode: str
    synced: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'mode': self.mode,
            'synced': self.synced,
            'failed': self.failed,
            'skipped': self.skipped
        }


class BatchScheduler:
    """
    Drives the sync subsystem in the background.

    The queue job runs with a fixed delay measured from the end of the
    previous run, so it never overlaps itself. Full, incremental and purge
    jobs run on cron schedules. Every job checks the remaining quota before
    touching Jira and isolates failures per row or per squad.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator = None,
        queue: SyncQueue = None,
        rate_limiter: RateLimiter = None,
        db: DatabaseConnection = None,
        config: Optional[Dict] = None
    ):
        self.db = db or get_db()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.queue = queue or SyncQueue(self.db)
        self.orchestrator = orchestrator or SyncOrchestrator(
            db=self.db, queue=self.queue, rate_limiter=self.rate_limiter
        )

        app_config = ConfigManager()
        scheduler_config = dict(app_config.get_scheduler_config())
        if config:
            scheduler_config.update(config)
        self.config = scheduler_config

        sync_config = app_config.get_sync_config()
        self.min_quota_threshold = int(
            scheduler_config.get('min_quota_threshold', sync_config.get('min_quota_threshold', 10))
        )
        self.queue_delay = timedelta(milliseconds=int(scheduler_config.get('queue_fixed_delay_ms', 1800000)))
        self.retention = timedelta(days=int(scheduler_config.get('purge_retention_days', 7)))
        self.stale_after = timedelta(minutes=int(scheduler_config.get('stale_in_progress_minutes', 120)))

        self._queue_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    def _quota_available(self) -> bool:
        return self.rate_limiter.remaining() >= self.min_quota_threshold

    # ========================================
    # Jobs
    # ========================================

    def process_queue(self) -> BatchResult:
        """
        Process due PENDING operations while quota lasts.

        Returns without reading the queue when the remaining quota is below
        the threshold. A failing operation is marked ERROR and the batch
        moves on to the next one.
        """
        if not self._queue_lock.acquire(blocking=False):
            logger.info("Queue processing already running, skipping")
            return BatchResult(skipped=True, remaining_quota=self.rate_limiter.remaining())

        try:
            result = BatchResult()

            if not self._quota_available():
                result.skipped = True
                result.remaining_quota = self.rate_limiter.remaining()
                logger.info(f"Queue processing skipped: {result.remaining_quota} calls left")
                return result

            pending = self.queue.fetch_pending(utcnow())
            if not pending:
                logger.debug("Sync queue empty")

            for operation in pending:
                if not self.rate_limiter.can_make_call():
                    result.stopped_for_quota = True
                    logger.warning("Quota exhausted, remaining operations stay queued")
                    break

                try:
                    self.orchestrator.process(operation)
                    result.processed += 1
                except Exception as e:
                    result.errors += 1
                    logger.error(f"Sync operation {operation.id} ({operation.operation_type}) failed: {e}")
                    self._record_error(operation.id, e)

            result.remaining_quota = self.rate_limiter.remaining()
            if pending:
                logger.info(
                    f"Queue processed: {result.processed} ok, {result.errors} errors, "
                    f"{result.remaining_quota} calls left"
                )
            return result
        finally:
            self._queue_lock.release()

    def _record_error(self, operation_id: int, error: Exception) -> None:
        try:
            self.queue.mark_error(operation_id, str(error))
        except Exception as e:
            logger.error(f"Could not mark sync operation {operation_id} as ERROR: {e}")

    def run_full_sync(self) -> SquadSyncSummary:
        """Daily full sync of every active squad."""
        return self._sync_active_squads(SyncMode.FULL)

    def run_incremental_sync(self) -> SquadSyncSummary:
        """Periodic incremental sync of every active squad."""
        return self._sync_active_squads(SyncMode.INCREMENTAL)

    def _sync_active_squads(self, mode: SyncMode) -> SquadSyncSummary:
        summary = SquadSyncSummary(mode=mode.value)

        if not self._quota_available():
            logger.info(f"{mode.value} sync skipped: {self.rate_limiter.remaining()} calls left")
            return summary

        squad_ids = self.active_squad_ids()
        logger.info(f"Starting {mode.value} sync for {len(squad_ids)} squads")

        for squad_id in squad_ids:
            if not self._quota_available():
                logger.warning(f"Quota low, {mode.value} sync skipped for squad {squad_id}")
                summary.skipped.append(squad_id)
                continue

            try:
                result = self.orchestrator.sync_all(squad_id, mode)
                if result.queued:
                    summary.skipped.append(squad_id)
                else:
                    summary.synced.append(squad_id)
            except Exception as e:
                logger.error(f"{mode.value} sync failed for squad {squad_id}: {e}")
                summary.failed.append(squad_id)

        logger.info(
            f"{mode.value} sync finished: {len(summary.synced)} ok, "
            f"{len(summary.failed)} failed, {len(summary.skipped)} skipped"
        )
        return summary

    def purge_queue(self) -> Dict[str, int]:
        """Delete old COMPLETED operations and release stale IN_PROGRESS ones."""
        now = utcnow()
        purged = self.queue.purge_completed_older_than(now - self.retention)
        reset = self.queue.reset_stale_in_progress(now - self.stale_after)
        logger.info(f"Queue maintenance: {purged} purged, {reset} stale operations reset")
        return {'purged': purged, 'reset': reset}

    def active_squad_ids(self) -> List[int]:
        with self.db.session_scope() as session:
            rows = session.query(SquadSyncConfig.squad_id).join(
                Squad, Squad.id == SquadSyncConfig.squad_id
            ).filter(
                SquadSyncConfig.active.is_(True),
                Squad.active.is_(True)
            ).order_by(SquadSyncConfig.squad_id).all()
            return [row[0] for row in rows]

    # ========================================
    # Scheduling
    # ========================================

    def start(self) -> BackgroundScheduler:
        """Register the jobs on a BackgroundScheduler and start it."""
        if self._scheduler is not None and self._scheduler.running:
            return self._scheduler

        scheduler = BackgroundScheduler(timezone=self.config.get('timezone', 'UTC'))
        self._scheduler = scheduler

        if not self.config.get('enabled', True):
            logger.info("Scheduler is disabled")
            return scheduler

        full_cron = self.config.get('full_sync_cron', '0 4 * * *')
        incremental_cron = self.config.get('incremental_sync_cron', '0 8,12,16,20 * * mon-fri')
        purge_cron = self.config.get('purge_cron', '0 3 * * *')

        scheduler.add_job(
            self._job('full sync', self.run_full_sync),
            CronTrigger.from_crontab(full_cron),
            id='full_sync', max_instances=1, coalesce=True
        )
        scheduler.add_job(
            self._job('incremental sync', self.run_incremental_sync),
            CronTrigger.from_crontab(incremental_cron),
            id='incremental_sync', max_instances=1, coalesce=True
        )
        scheduler.add_job(
            self._job('queue purge', self.purge_queue),
            CronTrigger.from_crontab(purge_cron),
            id='purge_queue', max_instances=1, coalesce=True
        )

        # First queue run right away, then re-armed after each completion
        scheduler.add_job(self._queue_job, 'date', id=QUEUE_JOB_ID, misfire_grace_time=None)

        scheduler.start()
        logger.info(
            f"Scheduler started (full='{full_cron}', incremental='{incremental_cron}', "
            f"purge='{purge_cron}', queue delay={self.queue_delay})"
        )
        return scheduler

    def _job(self, name: str, func):
        def run():
            logger.info(f"Running scheduled {name}")
            try:
                func()
            except Exception as e:
                logger.error(f"Scheduled {name} failed: {e}")
        return run

    def _queue_job(self) -> None:
        try:
            self.process_queue()
        except Exception as e:
            logger.error(f"Scheduled queue processing failed: {e}")
        finally:
            self._schedule_next_queue_run()

    def _schedule_next_queue_run(self) -> None:
        scheduler = self._scheduler
        if scheduler is None or not scheduler.running:
            return
        run_date = datetime.now(scheduler.timezone) + self.queue_delay
        scheduler.add_job(
            self._queue_job, 'date',
            run_date=run_date, id=QUEUE_JOB_ID,
            replace_existing=True, misfire_grace_time=None
        )

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")
