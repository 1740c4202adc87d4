"""
Error types raised by the backup engine.

ConfigurationError is fatal at startup. ArchiveError is fatal to a single run.
Everything else is collected on the run and only contributes to its status.
"""


class BackupError(Exception):
    """Base class for all backup engine errors."""


class ConfigurationError(BackupError):
    """Invalid or unusable configuration (bad schedule, no destination, no source)."""


class ContainerError(BackupError):
    """A container runtime operation failed for a single container."""

    def __init__(self, container, reason):
        self.container = container
        self.reason = str(reason).strip() or 'unknown error'
        super().__init__(f"{container}: {self.reason}")


class DiscoveryError(BackupError):
    """Listing containers failed on a reachable runtime."""


class StopError(ContainerError):
    pass


class RestartError(ContainerError):
    pass


class HookError(ContainerError):
    """A pre/post backup exec command failed inside a container."""


class ArchiveError(BackupError):
    """Building the archive failed; nothing is left to deliver."""


class DeliveryError(BackupError):
    """Copying the archive to one destination failed."""

    def __init__(self, destination, reason):
        self.destination = destination
        self.reason = str(reason).strip() or 'unknown error'
        super().__init__(f"{destination} delivery failed: {self.reason}")


class MetricsPushError(BackupError):
    """Pushing the metrics point to the backend failed."""
