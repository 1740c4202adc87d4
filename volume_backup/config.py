"""
Configuration loading and startup validation.

The whole process shares one immutable BackupConfiguration built from the
environment at startup. Components receive it explicitly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping
import os
import socket

from volume_backup.archive import render_filename
from volume_backup.errors import ConfigurationError
from volume_backup.utils import get_display_timezone, get_logger, local_now, split_list

logger = get_logger(__name__)

DEFAULT_SOURCES = ('/backup',)
DEFAULT_CRON_EXPRESSION = '@daily'
DEFAULT_FILENAME = 'backup-%Y-%m-%dT%H-%M-%S.tar.gz'
DEFAULT_ARCHIVE_DIR = '/archive'
DEFAULT_STOP_LABEL = 'docker-volume-backup.stop-during-backup'
DEFAULT_MEASUREMENT = 'docker_volume_backup'
DEFAULT_WORK_DIR = '/tmp'


@dataclass(frozen=True)
class S3Destination:
    bucket: str
    access_key_id: str
    secret_access_key: str
    region: str | None = None
    endpoint_url: str | None = None


@dataclass(frozen=True)
class InfluxTarget:
    url: str
    database: str
    credentials: str | None = None
    measurement: str = DEFAULT_MEASUREMENT


@dataclass(frozen=True)
class BackupConfiguration:
    sources: tuple[str, ...] = DEFAULT_SOURCES
    filename_template: str = DEFAULT_FILENAME
    archive_dir: Path | None = Path(DEFAULT_ARCHIVE_DIR)
    s3: S3Destination | None = None
    wait_seconds: float = 0.0
    hostname: str = field(default_factory=socket.gethostname)
    stop_label: str = DEFAULT_STOP_LABEL
    custom_label: str | None = None
    influxdb: InfluxTarget | None = None
    cron_expression: str = DEFAULT_CRON_EXPRESSION
    timezone: object = None
    notification_urls: tuple[str, ...] = ()
    archive_root: str = '/'
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    self_container_id: str | None = None

    @property
    def local_delivery_enabled(self) -> bool:
        return self.archive_dir is not None

    @property
    def remote_delivery_enabled(self) -> bool:
        return self.s3 is not None


def _env(environ: Mapping[str, str], key: str, default: str | None = None) -> str | None:
    value = environ.get(key)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _parse_wait(raw: str | None) -> float:
    if raw is None:
        return 0.0
    try:
        wait = float(raw)
    except ValueError:
        raise ConfigurationError(f"BACKUP_WAIT_SECONDS must be a number, got '{raw}'")
    if wait < 0:
        raise ConfigurationError(f"BACKUP_WAIT_SECONDS must not be negative, got {raw}")
    return wait


def _detect_self_container_id(environ: Mapping[str, str]) -> str | None:
    explicit = _env(environ, 'BACKUP_SELF_CONTAINER_ID')
    if explicit:
        return explicit
    # Docker sets HOSTNAME to the short container id
    if Path('/.dockerenv').exists():
        return _env(environ, 'HOSTNAME')
    return None


def load_config(environ: Mapping[str, str] | None = None) -> BackupConfiguration:
    """Build the BackupConfiguration from environment-style key/values.

    Raises ConfigurationError for values that cannot be parsed. Cross-field
    checks (destinations, sources, schedule) happen in validate_config().
    """
    if environ is None:
        environ = os.environ

    sources = tuple(split_list(environ.get('BACKUP_SOURCES', ''))) or DEFAULT_SOURCES

    # An explicitly empty BACKUP_ARCHIVE disables local delivery
    archive_raw = environ.get('BACKUP_ARCHIVE', DEFAULT_ARCHIVE_DIR).strip()
    archive_dir = Path(archive_raw) if archive_raw else None

    s3 = None
    bucket = _env(environ, 'AWS_S3_BUCKET_NAME')
    access_key = _env(environ, 'AWS_ACCESS_KEY_ID')
    secret_key = _env(environ, 'AWS_SECRET_ACCESS_KEY')
    if bucket and access_key and secret_key:
        s3 = S3Destination(
            bucket=bucket,
            access_key_id=access_key,
            secret_access_key=secret_key,
            region=_env(environ, 'AWS_DEFAULT_REGION'),
            endpoint_url=_env(environ, 'AWS_ENDPOINT_URL'),
        )
    elif bucket:
        logger.warning("[Config] AWS_S3_BUCKET_NAME is set but credentials are missing; remote delivery disabled")

    influxdb = None
    influx_url = _env(environ, 'INFLUXDB_URL')
    influx_db = _env(environ, 'INFLUXDB_DB')
    if influx_url and influx_db:
        influxdb = InfluxTarget(
            url=influx_url.rstrip('/'),
            database=influx_db,
            credentials=_env(environ, 'INFLUXDB_CREDENTIALS'),
            measurement=_env(environ, 'INFLUXDB_MEASUREMENT', DEFAULT_MEASUREMENT),
        )

    custom_label = _env(environ, 'BACKUP_CUSTOM_LABEL')
    if custom_label is not None:
        key, sep, value = custom_label.partition('=')
        if not sep or not key.strip() or not value.strip():
            raise ConfigurationError(f"BACKUP_CUSTOM_LABEL must look like key=value, got '{custom_label}'")

    return BackupConfiguration(
        sources=sources,
        filename_template=_env(environ, 'BACKUP_FILENAME', DEFAULT_FILENAME),
        archive_dir=archive_dir,
        s3=s3,
        wait_seconds=_parse_wait(_env(environ, 'BACKUP_WAIT_SECONDS')),
        hostname=_env(environ, 'BACKUP_HOSTNAME') or socket.gethostname(),
        stop_label=_env(environ, 'BACKUP_STOP_LABEL', DEFAULT_STOP_LABEL),
        custom_label=custom_label,
        influxdb=influxdb,
        cron_expression=_env(environ, 'BACKUP_CRON_EXPRESSION', DEFAULT_CRON_EXPRESSION),
        timezone=get_display_timezone(environ.get('TZ', '')),
        notification_urls=tuple(split_list(environ.get('NOTIFICATION_URLS', ''))),
        work_dir=Path(_env(environ, 'BACKUP_WORK_DIR', DEFAULT_WORK_DIR)),
        self_container_id=_detect_self_container_id(environ),
    )


def validate_config(config: BackupConfiguration) -> None:
    """Fail fast on configurations that could never produce a reachable backup."""
    from volume_backup.delivery import DeliveryDispatcher
    from volume_backup.scheduler import build_trigger

    build_trigger(config.cron_expression, config.timezone)
    DeliveryDispatcher(config).ensure_enabled()

    if not any(Path(source).exists() for source in config.sources):
        raise ConfigurationError(f"None of the configured sources exist: {', '.join(config.sources)}")

    render_filename(config.filename_template, local_now(config.timezone))

    if '%' not in config.filename_template:
        logger.warning("[Config] BACKUP_FILENAME '%s' has no time placeholders; every run overwrites the last archive",
                       config.filename_template)
