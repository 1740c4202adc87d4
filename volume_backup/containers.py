"""
Container lifecycle control for the backup window.

Sibling containers opt in by carrying the stop label with value "true". They
are discovered fresh on every run, stopped before the archive is built and
started again afterwards.
"""
from __future__ import annotations

from dataclasses import dataclass, field

import docker
from docker.errors import DockerException, NotFound

from volume_backup.errors import DiscoveryError, HookError, RestartError, StopError
from volume_backup.utils import get_logger

logger = get_logger(__name__)

PRE_BACKUP_LABEL = 'docker-volume-backup.exec-pre-backup'
POST_BACKUP_LABEL = 'docker-volume-backup.exec-post-backup'
STOP_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    running: bool
    labels: dict = field(default_factory=dict, compare=False, hash=False)

    def __str__(self):
        return f"{self.name} ({self.id[:12]})"


class ContainerController:
    """Discovers, stops and restarts opted-in containers through the Docker API."""

    def __init__(self, config, client=None, client_factory=docker.from_env):
        self.config = config
        self._client = client
        self._client_factory = client_factory

    def _get_client(self):
        """Return a Docker client or None when the daemon socket is unavailable."""
        if self._client is None:
            try:
                self._client = self._client_factory()
            except DockerException as e:
                logger.info("[Containers] Docker socket not available, skipping container stop/restart: %s", e)
                return None
        return self._client

    def _label_filters(self):
        filters = [f"{self.config.stop_label}=true"]
        if self.config.custom_label:
            filters.append(self.config.custom_label)
        return filters

    def _is_self(self, container):
        own = self.config.self_container_id
        if not own:
            return False
        return container.id.startswith(own) or container.name == own

    def discover_stoppable(self):
        """Return opted-in containers sorted by id. Read-only."""
        client = self._get_client()
        if client is None:
            return []

        try:
            containers = client.containers.list(all=True, filters={'label': self._label_filters()})
        except DockerException as e:
            raise DiscoveryError(f"Listing containers failed: {e}")

        refs = []
        for c in containers:
            # The daemon filter matches the key; the value must be exactly "true"
            if c.labels.get(self.config.stop_label) != 'true':
                continue
            if self._is_self(c):
                logger.debug("[Containers] Ignoring own container %s", c.name)
                continue
            refs.append(ContainerRef(id=c.id, name=c.name, running=c.status == 'running', labels=dict(c.labels)))

        refs.sort(key=lambda r: r.id)
        logger.info("[Containers] %d container(s) carry %s=true: %s",
                    len(refs), self.config.stop_label, ', '.join(str(r) for r in refs) or '-')
        return refs

    def _is_running(self, container_id):
        try:
            container = self._client.containers.get(container_id)
            container.reload()
            return container.status == 'running'
        except NotFound:
            return False

    def stop_all(self, refs, stopped=None):
        """Stop each running container in order.

        Returns (stopped, failures). Containers that were not running are left
        alone and are not part of the stopped set. When ``stopped`` is given it
        is appended to as each container stops, so the caller keeps an exact
        record even if stopping is interrupted.
        """
        stopped = [] if stopped is None else stopped
        failures = []
        if not refs:
            return stopped, failures
        client = self._get_client()
        if client is None:
            return stopped, failures

        for ref in refs:
            if not ref.running:
                logger.info("[Containers] %s is not running, leaving it stopped", ref)
                continue
            logger.info("[Containers] Stopping %s...", ref)
            try:
                client.containers.get(ref.id).stop(timeout=STOP_TIMEOUT_SECONDS)
                stopped.append(ref)
                continue
            except NotFound as e:
                failures.append(StopError(str(ref), f"container disappeared: {e}"))
                continue
            except DockerException as e:
                error = e

            # Stopping an already-stopped container counts as success
            try:
                still_running = self._is_running(ref.id)
            except DockerException as e:
                logger.warning("[Containers] Could not re-inspect %s after failed stop: %s", ref, e)
                still_running = True
            if still_running:
                logger.error("[Containers] Failed to stop %s: %s", ref, error)
                failures.append(StopError(str(ref), error))
            else:
                logger.info("[Containers] %s reported an error but is stopped: %s", ref, error)
                stopped.append(ref)

        logger.info("[Containers] Stopped %d of %d container(s)", len(stopped), len(refs))
        return stopped, failures

    def restart_all(self, refs):
        """Start each container in order. Returns (restarted, failures)."""
        restarted, failures = [], []
        if not refs:
            return restarted, failures
        client = self._get_client()
        if client is None:
            failures = [RestartError(str(ref), 'Docker socket not available') for ref in refs]
            return restarted, failures

        for ref in refs:
            logger.info("[Containers] Starting %s...", ref)
            try:
                client.containers.get(ref.id).start()
                restarted.append(ref)
                continue
            except DockerException as e:
                error = e

            # Starting an already-running container counts as success
            try:
                running = self._is_running(ref.id)
            except DockerException as e:
                logger.warning("[Containers] Could not re-inspect %s after failed start: %s", ref, e)
                running = False
            if running:
                restarted.append(ref)
            else:
                logger.error("[Containers] Failed to start %s: %s", ref, error)
                failures.append(RestartError(str(ref), error))

        logger.info("[Containers] Restarted %d of %d container(s)", len(restarted), len(refs))
        return restarted, failures

    def exec_hooks(self, refs, label):
        """Run the command stored in ``label`` inside each container carrying it.

        Returns a list of HookError for commands that failed; never raises.
        """
        failures = []
        targets = [r for r in refs if r.labels.get(label)]
        if not targets:
            return failures
        client = self._get_client()
        if client is None:
            return failures

        for ref in targets:
            command = ref.labels[label]
            logger.info("[Containers] Running %s hook in %s: %s", label.rsplit('.', 1)[-1], ref, command)
            try:
                result = client.containers.get(ref.id).exec_run(['/bin/sh', '-c', command])
            except DockerException as e:
                logger.error("[Containers] Hook failed in %s: %s", ref, e)
                failures.append(HookError(str(ref), e))
                continue
            output = result.output.decode('utf-8', errors='replace').strip() if result.output else ''
            if output:
                logger.debug("[Containers] Hook output from %s:\n%s", ref, output)
            if result.exit_code != 0:
                logger.error("[Containers] Hook in %s exited with code %s", ref, result.exit_code)
                failures.append(HookError(str(ref), f"exit code {result.exit_code}: {output[-500:]}"))
        return failures
