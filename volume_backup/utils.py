"""
Utility functions shared by the backup engine.
"""
import os
import re
import logging
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from zoneinfo import ZoneInfo

LOG_FORMAT = '[%(levelname)s] %(asctime)s %(name)s: %(message)s'
LOG_FILE_NAME = 'backup.log'

_SIZE_UNITS = ('B', 'KiB', 'MiB', 'GiB', 'TiB', 'PiB')


def _log_level():
    level = logging.getLevelName(os.environ.get('LOG_LEVEL', 'INFO').strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _file_handler(log_dir):
    """Daily rotated backup.log under log_dir; old files are left to the operator."""
    os.makedirs(log_dir, exist_ok=True)
    return TimedRotatingFileHandler(
        filename=os.path.join(log_dir, LOG_FILE_NAME),
        when='midnight',
        encoding='utf-8'
    )


def setup_logging():
    """Configure the root logger once per process.

    LOG_LEVEL picks the level (INFO by default). Output always goes to the
    container's stderr; LOG_DIR adds a rotating file. Existing handlers (pytest,
    embedding applications) are left untouched.
    """
    level = _log_level()
    root = logging.getLogger()
    root.setLevel(level)
    if root.handlers:
        return

    handlers = [logging.StreamHandler()]
    log_dir = os.environ.get('LOG_DIR', '').strip()
    file_error = None
    if log_dir:
        try:
            handlers.append(_file_handler(log_dir))
        except OSError as e:
            file_error = e

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    if file_error is not None:
        root.warning("File logging disabled, cannot write to LOG_DIR=%s: %s", log_dir, file_error)


def get_logger(name=None):
    """Return a logger for the given name (or the module logger if none)."""
    return logging.getLogger(name if name else __name__)


def local_now(tz=None):
    """Get current datetime in the given (or configured) timezone.

    Used for file names so timestamps match the operator's clock."""
    if tz is None:
        tz = get_display_timezone()
    return datetime.now(timezone.utc).astimezone(tz)


def get_display_timezone(tz_name=None):
    """Return the configured timezone.

    TZ wins when set and valid; otherwise the host's local zone is used.
    """
    if tz_name is None:
        tz_name = os.environ.get('TZ', '')
    tz_name = tz_name.strip()
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ValueError, KeyError, OSError):
            get_logger(__name__).warning("Unknown TZ '%s', falling back to host zone", tz_name)
    from tzlocal import get_localzone
    return get_localzone()


def format_bytes(size):
    """'10.0 KiB' style sizes for log lines and notifications; '-' when unknown."""
    if size is None:
        return '-'
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    if unit == 0:
        return f"{int(value)} B"
    return f"{value:.1f} {_SIZE_UNITS[unit]}"


def format_duration(seconds):
    if seconds is None:
        return '-'
    hours, rest = divmod(int(round(seconds)), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def split_list(value):
    """Split a whitespace or comma separated env value into items."""
    if not value:
        return []
    return [item for item in re.split(r'[\s,]+', value.strip()) if item]
