"""
Run metrics: collected for every run, always logged, optionally pushed to InfluxDB.
"""
from __future__ import annotations

import requests

from volume_backup.delivery import LOCAL, NOT_ATTEMPTED, REMOTE
from volume_backup.errors import MetricsPushError
from volume_backup.utils import get_logger

logger = get_logger(__name__)

PUSH_TIMEOUT_SECONDS = 10

# Field order in the logged record
FIELD_NAMES = (
    'status',
    'size_compressed_bytes',
    'size_uncompressed_bytes',
    'containers_total',
    'containers_stopped',
    'containers_restarted',
    'stop_failures',
    'restart_failures',
    'hook_failures',
    'delivery_local',
    'delivery_remote',
    'time_wall',
    'time_compress',
    'time_downtime',
    'time_upload',
    'error',
)


def _escape_key(value):
    return str(value).replace('\\', '\\\\').replace(',', '\\,').replace('=', '\\=').replace(' ', '\\ ')


def _escape_measurement(value):
    return str(value).replace('\\', '\\\\').replace(',', '\\,').replace(' ', '\\ ')


def _format_field(value):
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        return repr(value)
    text = str(value).replace('\\', '\\\\').replace('"', '\\"').replace('\n', ' ')
    return f'"{text}"'


def to_line_protocol(measurement, tags, fields, timestamp):
    """Format one point in InfluxDB line protocol (timestamp in seconds)."""
    head = _escape_measurement(measurement)
    for key in sorted(tags):
        if tags[key] in (None, ''):
            continue
        head += f",{_escape_key(key)}={_escape_key(tags[key])}"
    body = ','.join(
        f"{_escape_key(key)}={_format_field(value)}"
        for key, value in fields.items()
        if value is not None
    )
    return f"{head} {body} {int(timestamp)}"


class MetricsReporter:
    """Builds the per-run metrics record and emits it."""

    def __init__(self, config, session=None):
        self.config = config
        self._session = session

    def _get_session(self):
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def collect(self, run):
        """Return the flat metrics record for ``run``; ``host`` is the only tag."""
        delivery = run.delivery
        if delivery is not None:
            local = delivery.outcomes[LOCAL].status
            remote = delivery.outcomes[REMOTE].status
        else:
            local = remote = NOT_ATTEMPTED

        first_error = run.first_error
        return {
            'host': self.config.hostname,
            'status': run.status,
            'size_compressed_bytes': int(run.size_compressed),
            'size_uncompressed_bytes': int(run.size_uncompressed),
            'containers_total': len(run.containers),
            'containers_stopped': len(run.stopped),
            'containers_restarted': len(run.restarted),
            'stop_failures': len(run.stop_failures),
            'restart_failures': len(run.restart_failures),
            'hook_failures': len(run.hook_failures),
            'delivery_local': local,
            'delivery_remote': remote,
            'time_wall': round(float(run.durations.get('wall', 0.0)), 3),
            'time_compress': round(float(run.durations.get('compress', 0.0)), 3),
            'time_downtime': round(float(run.durations.get('downtime', 0.0)), 3),
            'time_upload': round(float(run.durations.get('upload', 0.0)), 3),
            'error': str(first_error) if first_error else '',
        }

    def format_record(self, record):
        return ' '.join(f"{name}={record[name]}" for name in ('host',) + FIELD_NAMES)

    def push(self, record, timestamp):
        """Write one point to the configured InfluxDB. Raises MetricsPushError."""
        target = self.config.influxdb
        fields = {name: record[name] for name in FIELD_NAMES}
        line = to_line_protocol(target.measurement, {'host': record['host']}, fields, timestamp)

        auth = None
        if target.credentials:
            user, _sep, password = target.credentials.partition(':')
            auth = (user, password)

        try:
            r = self._get_session().post(
                f"{target.url}/write",
                params={'db': target.database, 'precision': 's'},
                data=line.encode('utf-8'),
                auth=auth,
                timeout=PUSH_TIMEOUT_SECONDS,
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise MetricsPushError(f"Writing to {target.url} failed: {e}")

    def report(self, run):
        """Log the run's metrics and push them when a backend is configured.

        A failed push is logged and recorded on the run; it never changes the
        run's status.
        """
        record = self.collect(run)
        logger.info("[Metrics] %s", self.format_record(record))

        if self.config.influxdb is None:
            return record

        try:
            self.push(record, run.started_at.timestamp())
            run.metrics_pushed = True
            logger.info("[Metrics] Pushed metrics to %s (db=%s)", self.config.influxdb.url, self.config.influxdb.database)
        except MetricsPushError as e:
            run.metrics_pushed = False
            logger.error("[Metrics] %s", e)
        return record
