from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

SUCCESS = 'success'
PARTIAL_FAILURE = 'partial-failure'
FAILURE = 'failure'

# Run states, in pipeline order
IDLE = 'idle'
DISCOVERING = 'discovering'
STOPPING = 'stopping'
ARCHIVING = 'archiving'
RESTARTING = 'restarting'
DELIVERING = 'delivering'
REPORTING = 'reporting'
DONE = 'done'


@dataclass
class BackupRun:
    """State of a single backup run. Discarded once its metrics are emitted."""

    started_at: datetime
    state: str = IDLE
    containers: list = field(default_factory=list)
    stopped: list = field(default_factory=list)
    restarted: list = field(default_factory=list)
    restart_attempted: bool = False
    archive_path: Path | None = None
    size_compressed: int = 0
    size_uncompressed: int = 0
    durations: dict = field(default_factory=dict)
    delivery: object = None
    stop_failures: list = field(default_factory=list)
    restart_failures: list = field(default_factory=list)
    hook_failures: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    status: str | None = None
    metrics_pushed: bool | None = None

    def record_error(self, error):
        self.errors.append(error)

    @property
    def first_error(self):
        return self.errors[0] if self.errors else None

    @property
    def pending_restart(self):
        """Containers this run stopped and has not yet tried to start again."""
        if self.restart_attempted:
            return []
        return list(self.stopped)

    def transition(self, state):
        self.state = state
