import logging
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger("clinic.backup")

BACKUP_JOB_ID = "clinic-auto-backup"


class BackupScheduler:
    """Owns the periodic backup job. ``scheduler`` is injectable for tests."""

    def __init__(self, job, scheduler=None):
        self._job = job
        self._scheduler = scheduler or BackgroundScheduler()
        self.interval_hours = None

    @property
    def running(self) -> bool:
        return self.interval_hours is not None

    def _run(self):
        try:
            self._job()
        except Exception as e:
            # keep the scheduler alive; the next interval will try again
            logger.error("event=scheduled_backup_failed error=%s", str(e))

    def start(self, interval_hours: float) -> None:
        """Schedule the job every ``interval_hours`` and fire it once right away."""
        if not self._scheduler.running:
            self._scheduler.start()
        self._scheduler.add_job(
            self._run,
            "interval",
            hours=interval_hours,
            id=BACKUP_JOB_ID,
            replace_existing=True,
            next_run_time=datetime.now(),
            max_instances=1,
            coalesce=True,
        )
        self.interval_hours = interval_hours
        logger.info("event=auto_backup_started interval_hours=%s", interval_hours)

    def stop(self) -> None:
        if not self.running:
            return
        if self._scheduler.get_job(BACKUP_JOB_ID) is not None:
            self._scheduler.remove_job(BACKUP_JOB_ID)
        self.interval_hours = None
        logger.info("event=auto_backup_stopped")

    def reconfigure(self, enabled: bool, interval_hours: float) -> None:
        if enabled:
            self.start(interval_hours)
        else:
            self.stop()

    def shutdown(self) -> None:
        self.stop()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
