"""
Failure notifications using Apprise.
"""
import apprise

from volume_backup.models import FAILURE, PARTIAL_FAILURE
from volume_backup.utils import format_bytes, format_duration, get_logger

logger = get_logger(__name__)


def build_body(run, hostname):
    """Plain-text summary of a run for notification channels."""
    lines = [
        f"Host: {hostname}",
        f"Started: {run.started_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}",
        f"Status: {run.status}",
        f"Archive: {run.archive_path.name if run.archive_path else '-'} ({format_bytes(run.size_compressed)})",
        f"Containers: {len(run.stopped)} stopped / {len(run.restarted)} restarted of {len(run.containers)}",
        f"Duration: {format_duration(run.durations.get('wall'))}",
    ]
    if run.delivery is not None:
        for name, outcome in run.delivery.outcomes.items():
            lines.append(f"Delivery {name}: {outcome.status}")
    if run.errors:
        lines.append('')
        lines.append('Errors:')
        lines.extend(f"- {e}" for e in run.errors)
    return '\n'.join(lines)


class Notifier:
    """Sends a message to every configured Apprise URL when a run does not fully succeed."""

    def __init__(self, urls, apprise_factory=apprise.Apprise):
        self.urls = list(urls or [])
        self._apprise_factory = apprise_factory

    @property
    def enabled(self):
        return bool(self.urls)

    def _get_apprise_instance(self):
        apobj = self._apprise_factory()
        added = 0
        for url in self.urls:
            if apobj.add(url):
                added += 1
            else:
                logger.warning("[Notifications] Ignoring invalid Apprise URL: %s", url.split('://', 1)[0] + '://...')
        return apobj if added else None

    def notify_run(self, run, hostname):
        """Notify about failed and partially failed runs. Returns True if sent."""
        if not self.enabled or run.status not in (FAILURE, PARTIAL_FAILURE):
            return False

        emoji = '❌' if run.status == FAILURE else '⚠️'
        label = 'failed' if run.status == FAILURE else 'partially failed'
        title = f"{emoji} Backup {label} on {hostname}"
        try:
            apobj = self._get_apprise_instance()
            if apobj is None:
                logger.warning("[Notifications] No valid notification URLs configured")
                return False
            sent = apobj.notify(title=title, body=build_body(run, hostname))
        except Exception as e:
            # Notification channels are third-party; a broken one must not fail the run
            logger.exception("[Notifications] Error sending notification: %s", e)
            return False

        if sent:
            logger.info("[Notifications] Sent %s notification", run.status)
        else:
            logger.error("[Notifications] Apprise reported a delivery failure")
        return bool(sent)
