"""CLI entrypoint for the backup engine.

Usage:
  python -m volume_backup            # run backups on BACKUP_CRON_EXPRESSION forever
  python -m volume_backup --now      # run a single backup immediately and exit
  python -m volume_backup --check    # validate configuration and exit

Configuration comes from the environment (see config.load_config).
"""
import argparse
import signal
import sys

from volume_backup.config import load_config, validate_config
from volume_backup.errors import ConfigurationError
from volume_backup.executor import BackupExecutor
from volume_backup.models import FAILURE
from volume_backup.scheduler import BackupScheduler
from volume_backup.utils import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv):
    parser = argparse.ArgumentParser(prog='docker-volume-backup')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--now', action='store_true', help='Run one backup immediately and exit')
    mode.add_argument('--check', action='store_true', help='Validate configuration and exit')
    return parser.parse_args(argv)


def run_once(executor):
    """Run a single backup; termination signals wait for the run to finish."""
    def _defer(signum, frame):
        logger.warning("Received %s, finishing the current backup before exiting", signal.Signals(signum).name)

    previous = {sig: signal.signal(sig, _defer) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        run = executor.run()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return EXIT_RUN_FAILED if run.status == FAILURE else EXIT_OK


def run_forever(config, executor):
    """Run the scheduler until SIGTERM/SIGINT; a running backup is allowed to finish."""
    backup_scheduler = BackupScheduler(config.cron_expression, executor.run, timezone=config.timezone)

    def _shutdown(signum, frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        backup_scheduler.shutdown(wait=False)

    previous = {sig: signal.signal(sig, _shutdown) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        backup_scheduler.start()
        # The scheduler loop has ended; let an in-flight run restart its containers
        backup_scheduler.wait_for_run()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return EXIT_OK


def main(argv=None):
    setup_logging()
    args = parse_args(argv if argv is not None else sys.argv[1:])

    try:
        config = load_config()
        validate_config(config)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR

    logger.info("Backing up %s (local: %s, s3: %s, metrics: %s)",
                ', '.join(config.sources),
                config.archive_dir or 'disabled',
                config.s3.bucket if config.s3 else 'disabled',
                config.influxdb.url if config.influxdb else 'disabled')

    if args.check:
        logger.info("Configuration OK")
        return EXIT_OK

    executor = BackupExecutor(config)
    if args.now:
        return run_once(executor)
    return run_forever(config, executor)


if __name__ == '__main__':
    sys.exit(main())
