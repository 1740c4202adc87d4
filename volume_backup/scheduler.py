"""
Scheduler for automatic backup runs.
"""
import threading
from datetime import datetime

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from croniter import croniter

from volume_backup.errors import ConfigurationError
from volume_backup.utils import get_display_timezone, get_logger

logger = get_logger(__name__)

# Seconds a fire time may be missed by (e.g. host suspend) and still run
MISFIRE_GRACE_SECONDS = 60

CRON_MACROS = {
    '@yearly': '0 0 1 1 *',
    '@annually': '0 0 1 1 *',
    '@monthly': '0 0 1 * *',
    '@weekly': '0 0 * * 0',
    '@daily': '0 0 * * *',
    '@midnight': '0 0 * * *',
    '@hourly': '0 * * * *',
}

# APScheduler counts weekdays from monday=0, classic cron from sunday=0 (and 7)
_CRON_WEEKDAYS = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat']


def expand_expression(expression):
    """Return the 5-field crontab form of an expression (macros expanded)."""
    if expression is None:
        raise ConfigurationError("Schedule expression is empty")
    expr = ' '.join(str(expression).split())
    return CRON_MACROS.get(expr.lower(), expr)


def _day_field(values):
    if values == ['*']:
        return '*'
    return ','.join('last' if str(v).lower() == 'l' else str(v) for v in values)


def _day_of_week_field(values):
    if values == ['*']:
        return '*'
    days = sorted({int(v) % 7 for v in values})
    if len(days) == 7:
        return '*'
    return ','.join(_CRON_WEEKDAYS[d] for d in days)


def build_trigger(expression, timezone=None):
    """Parse a cron expression into an APScheduler trigger.

    Day-of-month and day-of-week are taken from croniter's expansion. When both
    are restricted the job fires on days matching either, as cron does, so the
    result is an OrTrigger of two CronTriggers.

    Raises ConfigurationError for malformed expressions so callers can fail
    fast at startup.
    """
    expr = expand_expression(expression)
    if not croniter.is_valid(expr):
        raise ConfigurationError(f"Invalid cron expression: '{expression}'")

    parts = expr.split()
    if len(parts) != 5:
        raise ConfigurationError(f"Cron expression must have 5 fields, got '{expression}'")
    if '#' in parts[4]:
        raise ConfigurationError(f"Nth-weekday schedules are not supported: '{expression}'")

    if timezone is None:
        timezone = get_display_timezone()

    try:
        expanded = croniter(expr).expanded
        day = _day_field(expanded[2])
        day_of_week = _day_of_week_field(expanded[4])
        common = dict(minute=parts[0], hour=parts[1], month=parts[3], timezone=timezone)
        if day != '*' and day_of_week != '*':
            return OrTrigger([
                CronTrigger(day=day, **common),
                CronTrigger(day_of_week=day_of_week, **common),
            ])
        return CronTrigger(day=day, day_of_week=day_of_week, **common)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid cron expression '{expression}': {e}")


def next_occurrence(expression, after):
    """Return the next fire time strictly after ``after`` (timezone-aware)."""
    return croniter(expand_expression(expression), after).get_next(datetime)


class BackupScheduler:
    """Fires a callback at every occurrence of a cron expression, without overlap.

    An occurrence that arrives while the previous run is still going is
    skipped, never queued.
    """

    def __init__(self, expression, callback, timezone=None, scheduler_factory=BlockingScheduler):
        self.expression = expression
        self.timezone = timezone or get_display_timezone()
        self.trigger = build_trigger(expression, self.timezone)
        self.callback = callback
        self.skipped = 0
        self._scheduler_factory = scheduler_factory
        self._scheduler = None
        self._run_lock = threading.Lock()

    @property
    def running(self):
        return self._run_lock.locked()

    def fire(self):
        """Run the callback unless a run is already in progress.

        Returns True if the callback was invoked.
        """
        if not self._run_lock.acquire(blocking=False):
            self.skipped += 1
            logger.warning("[Scheduler] Previous backup still running, skipping this occurrence")
            return False
        try:
            self.callback()
        except Exception as e:
            # A failed run never stops future occurrences
            logger.exception("[Scheduler] Backup run raised an unexpected error: %s", e)
        finally:
            self._run_lock.release()
            self._log_next_fire()
        return True

    def _log_next_fire(self):
        try:
            upcoming = self.trigger.get_next_fire_time(None, datetime.now(self.timezone))
            if upcoming:
                logger.info("[Scheduler] Next backup at %s", upcoming.isoformat())
        except (ValueError, TypeError) as e:
            logger.debug("[Scheduler] Could not compute next fire time: %s", e)

    def start(self):
        """Block the calling thread, firing backups until shutdown() is called."""
        self._scheduler = self._scheduler_factory(timezone=self.timezone)
        self._scheduler.add_job(
            self.fire,
            self.trigger,
            id='backup',
            name='Volume backup',
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            misfire_grace_time=MISFIRE_GRACE_SECONDS
        )
        logger.info("[Scheduler] Scheduled backups with cron '%s' (timezone %s)", self.expression, self.timezone)
        self._log_next_fire()
        self._scheduler.start()

    def shutdown(self, wait=True):
        """Stop firing; with wait=True, block until a running backup has finished."""
        scheduler = self._scheduler
        if scheduler is None or not scheduler.running:
            return
        if self.running:
            logger.info("[Scheduler] Shutdown requested, waiting for the running backup to finish")
        scheduler.shutdown(wait=wait)
        logger.info("[Scheduler] Stopped")

    def wait_for_run(self):
        """Block until no backup run is in progress."""
        with self._run_lock:
            pass
