"""
Delivery of a finished archive to the configured destinations.
"""
from __future__ import annotations

import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from volume_backup.errors import ConfigurationError, DeliveryError
from volume_backup.models import FAILURE, PARTIAL_FAILURE, SUCCESS
from volume_backup.utils import get_logger

logger = get_logger(__name__)

LOCAL = 'local'
REMOTE = 'remote'

OK = 'ok'
FAILED = 'failed'
NOT_ATTEMPTED = 'not_attempted'


@dataclass
class DestinationOutcome:
    status: str = NOT_ATTEMPTED
    error: DeliveryError | None = None
    location: str | None = None


@dataclass
class DeliveryReport:
    outcomes: dict = field(default_factory=lambda: {LOCAL: DestinationOutcome(), REMOTE: DestinationOutcome()})
    elapsed: float = 0.0

    @property
    def attempted(self):
        return [name for name, o in self.outcomes.items() if o.status != NOT_ATTEMPTED]

    @property
    def errors(self):
        return [o.error for o in self.outcomes.values() if o.error is not None]

    @property
    def status(self):
        """success, partial-failure or failure over the attempted destinations."""
        attempted = [self.outcomes[name] for name in self.attempted]
        failed = [o for o in attempted if o.status == FAILED]
        if not failed:
            return SUCCESS
        if len(failed) < len(attempted):
            return PARTIAL_FAILURE
        return FAILURE


class DeliveryDispatcher:
    """Copies archives to the local archive directory and/or an S3 bucket."""

    def __init__(self, config, s3_client=None):
        self.config = config
        self._s3_client = s3_client

    def enabled_destinations(self):
        enabled = []
        if self.config.local_delivery_enabled:
            enabled.append(LOCAL)
        if self.config.remote_delivery_enabled:
            enabled.append(REMOTE)
        return enabled

    def ensure_enabled(self):
        if not self.enabled_destinations():
            raise ConfigurationError(
                "No delivery destination enabled: set BACKUP_ARCHIVE and/or AWS_S3_BUCKET_NAME with credentials"
            )

    def _get_s3_client(self):
        if self._s3_client is None:
            s3 = self.config.s3
            self._s3_client = boto3.client(
                's3',
                aws_access_key_id=s3.access_key_id,
                aws_secret_access_key=s3.secret_access_key,
                region_name=s3.region,
                endpoint_url=s3.endpoint_url,
            )
        return self._s3_client

    def deliver_local(self, archive_path):
        target_dir = Path(self.config.archive_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / archive_path.name
        if target.resolve() == archive_path.resolve():
            return target
        # Copy under a temporary name so a half-written file never carries the final name
        partial = target_dir / f".{archive_path.name}.partial"
        try:
            shutil.copyfile(archive_path, partial)
            partial.replace(target)
        except OSError:
            partial.unlink(missing_ok=True)
            raise
        return target

    def deliver_remote(self, archive_path):
        bucket = self.config.s3.bucket
        key = archive_path.name
        self._get_s3_client().upload_file(str(archive_path), bucket, key)
        return f"s3://{bucket}/{key}"

    def deliver(self, archive_path):
        """Copy the archive to every enabled destination; never raises for a single destination."""
        archive_path = Path(archive_path)
        report = DeliveryReport()
        start = time.monotonic()

        if self.config.local_delivery_enabled:
            outcome = report.outcomes[LOCAL]
            try:
                target = self.deliver_local(archive_path)
                outcome.status = OK
                outcome.location = str(target)
                logger.info("[Delivery] Copied archive to %s", target)
            except OSError as e:
                outcome.status = FAILED
                outcome.error = DeliveryError(LOCAL, e)
                logger.error("[Delivery] Local copy to %s failed: %s", self.config.archive_dir, e)
        else:
            logger.debug("[Delivery] Local delivery not configured")

        if self.config.remote_delivery_enabled:
            outcome = report.outcomes[REMOTE]
            try:
                location = self.deliver_remote(archive_path)
                outcome.status = OK
                outcome.location = location
                logger.info("[Delivery] Uploaded archive to %s", location)
            except (BotoCoreError, ClientError, S3UploadFailedError, OSError) as e:
                outcome.status = FAILED
                outcome.error = DeliveryError(REMOTE, e)
                logger.error("[Delivery] Upload to bucket %s failed: %s", self.config.s3.bucket, e)
        else:
            logger.debug("[Delivery] Remote delivery not configured")

        report.elapsed = time.monotonic() - start
        return report
