"""
Backup execution engine with phased processing.

One run: discover -> stop -> archive -> restart -> wait -> deliver -> report.
Containers stopped by a run are always started again by that run, whatever
happens while archiving.
"""
import time
from pathlib import Path

from volume_backup import utils
from volume_backup.archive import build_archive, render_filename
from volume_backup.containers import POST_BACKUP_LABEL, PRE_BACKUP_LABEL, ContainerController
from volume_backup.delivery import DeliveryDispatcher
from volume_backup.errors import ArchiveError, ConfigurationError, DiscoveryError
from volume_backup.metrics import MetricsReporter
from volume_backup.models import (
    ARCHIVING, DELIVERING, DISCOVERING, DONE, FAILURE, PARTIAL_FAILURE, REPORTING, RESTARTING, STOPPING, SUCCESS,
    BackupRun,
)
from volume_backup.notifications import Notifier
from volume_backup.utils import format_duration, get_logger

logger = get_logger(__name__)


class BackupExecutor:
    """Handles backup runs with phased processing."""

    def __init__(self, config, controller=None, dispatcher=None, reporter=None, notifier=None,
                 sleep=time.sleep, clock=None):
        """
        Args:
            config: BackupConfiguration shared by every run
            controller: ContainerController (built from config if omitted)
            dispatcher: DeliveryDispatcher (built from config if omitted)
            reporter: MetricsReporter (built from config if omitted)
            notifier: Notifier; built from config.notification_urls if omitted
            sleep: function used for the post-restart wait
            clock: returns the run's start time (timezone-aware)
        """
        self.config = config
        self.controller = controller or ContainerController(config)
        self.dispatcher = dispatcher or DeliveryDispatcher(config)
        self.reporter = reporter or MetricsReporter(config)
        self.notifier = notifier if notifier is not None else Notifier(config.notification_urls)
        self.sleep = sleep
        self.clock = clock or (lambda: utils.local_now(config.timezone))

    def run(self):
        """Execute one backup run and return its BackupRun.

        Never raises for failures inside the run; they end up in the run's
        status and metrics. KeyboardInterrupt/SystemExit propagate, but only
        after stopped containers have been started again.
        """
        run = BackupRun(started_at=self.clock())
        wall_start = time.monotonic()
        logger.info("[Backup] Starting backup run at %s", run.started_at.isoformat())

        try:
            try:
                self._phase_1_stop(run)
                self._phase_2_archive(run)
            finally:
                self._phase_3_restart(run)

            if run.archive_path is not None:
                self._wait_after_restart()
                self._phase_4_deliver(run)
        except (ArchiveError, ConfigurationError) as e:
            run.record_error(e)
            logger.error("[Backup] Archive failed, skipping delivery: %s", e)
        except Exception as e:
            run.record_error(e)
            logger.exception("[Backup] Unexpected error during backup run: %s", e)
        finally:
            run.durations['wall'] = time.monotonic() - wall_start
            self._remove_work_file(run)
            run.status = self.compute_status(run)
            self._phase_5_report(run)
            run.transition(DONE)

        if run.status == SUCCESS:
            logger.info("[Backup] Backup run completed successfully in %s", format_duration(run.durations['wall']))
        else:
            logger.error("[Backup] Backup run finished with status %s in %s: %s",
                         run.status, format_duration(run.durations['wall']), run.first_error)
        return run

    def _phase_1_stop(self, run):
        """Phase 1: discover opted-in containers, run pre hooks, stop them."""
        logger.info("[Backup] ### Phase 1: Discovering and stopping containers ###")
        run.transition(DISCOVERING)
        try:
            run.containers = self.controller.discover_stoppable()
        except DiscoveryError as e:
            run.record_error(e)
            logger.error("[Backup] Container discovery failed, continuing without stopping: %s", e)
            run.containers = []

        if not run.containers:
            logger.info("[Backup] No containers to stop")
            return

        running = [r for r in run.containers if r.running]
        self._record_hook_failures(run, self.controller.exec_hooks(running, PRE_BACKUP_LABEL))

        run.transition(STOPPING)
        run.durations['downtime_start'] = time.monotonic()
        # run.stopped is filled in place so restart sees every stop, even if this call is interrupted
        _stopped, failures = self.controller.stop_all(run.containers, stopped=run.stopped)
        for failure in failures:
            run.stop_failures.append(failure)
            run.record_error(failure)

    def _phase_2_archive(self, run):
        """Phase 2: build the archive in the work directory."""
        logger.info("[Backup] ### Phase 2: Creating archive ###")
        run.transition(ARCHIVING)
        filename = render_filename(self.config.filename_template, run.started_at)
        destination = Path(self.config.work_dir) / filename
        try:
            result = build_archive(self.config.sources, destination, archive_root=self.config.archive_root)
        except OSError as e:
            raise ArchiveError(f"Creating {destination} failed: {e}")
        run.archive_path = result.path
        run.size_compressed = result.size_compressed
        run.size_uncompressed = result.size_uncompressed
        run.durations['compress'] = result.elapsed

    def _phase_3_restart(self, run):
        """Phase 3: start every container this run stopped, then run post hooks."""
        pending = run.pending_restart
        run.restart_attempted = True

        if pending:
            logger.info("[Backup] ### Phase 3: Restarting %d container(s) ###", len(pending))
            run.transition(RESTARTING)
            restarted, failures = self.controller.restart_all(pending)
            run.restarted = list(restarted)
            for failure in failures:
                run.restart_failures.append(failure)
                run.record_error(failure)

            started = run.durations.pop('downtime_start', None)
            if started is not None:
                run.durations['downtime'] = time.monotonic() - started

        # Post hooks only go to containers that are up again: restarted ones and those never stopped
        stopped_ids = {r.id for r in run.stopped}
        restarted_ids = {r.id for r in run.restarted}
        targets = [r for r in run.containers
                   if r.running and (r.id not in stopped_ids or r.id in restarted_ids)]
        self._record_hook_failures(run, self.controller.exec_hooks(targets, POST_BACKUP_LABEL))

    def _wait_after_restart(self):
        wait = self.config.wait_seconds
        if wait and wait > 0:
            logger.info("[Backup] Waiting %ss before delivery", wait)
            self.sleep(wait)

    def _phase_4_deliver(self, run):
        """Phase 4: copy the archive to every enabled destination."""
        logger.info("[Backup] ### Phase 4: Delivering archive ###")
        run.transition(DELIVERING)
        report = self.dispatcher.deliver(run.archive_path)
        run.delivery = report
        run.durations['upload'] = report.elapsed
        for error in report.errors:
            run.record_error(error)

    def _phase_5_report(self, run):
        """Phase 5: emit metrics and notify."""
        logger.info("[Backup] ### Phase 5: Reporting ###")
        run.transition(REPORTING)
        try:
            self.reporter.report(run)
        except Exception as e:
            logger.exception("[Backup] Failed to report metrics: %s", e)

        if self.notifier is not None:
            self.notifier.notify_run(run, self.config.hostname)

    def _record_hook_failures(self, run, failures):
        for failure in failures:
            run.hook_failures.append(failure)
            run.record_error(failure)

    def _remove_work_file(self, run):
        """Delete the build copy of the archive unless it is the delivered local copy."""
        path = run.archive_path
        if path is None or not path.exists():
            return
        archive_dir = self.config.archive_dir
        if archive_dir is not None and path.parent.resolve() == Path(archive_dir).resolve():
            return
        try:
            path.unlink()
        except OSError as e:
            logger.warning("[Backup] Could not remove temporary archive %s: %s", path, e)

    @staticmethod
    def compute_status(run):
        """Overall status of a finished run.

        failure: no archive, or every enabled destination failed.
        partial-failure: some destination failed, or a container/hook step failed.
        """
        if run.archive_path is None or run.delivery is None:
            return FAILURE
        delivery_status = run.delivery.status
        if delivery_status == FAILURE:
            return FAILURE
        if delivery_status == PARTIAL_FAILURE:
            return PARTIAL_FAILURE
        if run.errors:
            return PARTIAL_FAILURE
        return SUCCESS
