import os
import sys
from collections import namedtuple
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
from docker.errors import APIError, NotFound

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from volume_backup.config import BackupConfiguration  # noqa: E402

STOP_LABEL = 'docker-volume-backup.stop-during-backup'
UTC = ZoneInfo('UTC')

ExecResult = namedtuple('ExecResult', 'exit_code,output')


class FakeContainer:
    def __init__(self, client, cid, name, status='running', labels=None):
        self.client = client
        self.id = cid
        self.name = name
        self.status = status
        self.labels = labels or {}
        self.stop_errors = []
        self.start_errors = []
        self.stop_has_effect = True
        self.exec_exit_code = 0

    def stop(self, timeout=None):
        self.client.calls.append(('stop', self.name))
        if self.stop_errors:
            raise self.stop_errors.pop(0)
        if self.stop_has_effect:
            self.status = 'exited'

    def start(self):
        self.client.calls.append(('start', self.name))
        if self.start_errors:
            raise self.start_errors.pop(0)
        self.status = 'running'

    def reload(self):
        pass

    def exec_run(self, cmd):
        self.client.calls.append(('exec', self.name, cmd[-1]))
        return ExecResult(self.exec_exit_code, b'hook output')


class FakeContainers:
    def __init__(self, client):
        self.client = client
        self.items = {}
        self.list_error = None

    def list(self, all=False, filters=None):
        self.client.calls.append(('list', tuple((filters or {}).get('label', []))))
        if self.list_error:
            raise self.list_error
        wanted = (filters or {}).get('label', [])
        result = []
        for c in self.items.values():
            if not all and c.status != 'running':
                continue
            ok = True
            for flt in wanted:
                key, _sep, value = flt.partition('=')
                if key not in c.labels or (value and c.labels[key] != value):
                    ok = False
            if ok:
                result.append(c)
        return result

    def get(self, cid):
        if cid not in self.items:
            raise NotFound(f"No such container: {cid}")
        return self.items[cid]


class FakeDockerClient:
    def __init__(self, calls=None):
        self.calls = calls if calls is not None else []
        self.containers = FakeContainers(self)

    def add(self, cid, name, status='running', labels=None, opt_in=True):
        labels = dict(labels or {})
        if opt_in:
            labels.setdefault(STOP_LABEL, 'true')
        container = FakeContainer(self, cid, name, status=status, labels=labels)
        self.containers.items[cid] = container
        return container


class FakeS3Client:
    def __init__(self, calls=None, error=None):
        self.calls = calls if calls is not None else []
        self.error = error
        self.uploads = []

    def upload_file(self, filename, bucket, key):
        self.calls.append(('upload', key))
        if self.error:
            raise self.error
        with open(filename, 'rb') as f:
            self.uploads.append((bucket, key, f.read()))


def api_error(message='boom'):
    return APIError(message)


@pytest.fixture
def docker_client():
    return FakeDockerClient()


@pytest.fixture
def source_dir(tmp_path):
    src = tmp_path / 'backup' / 'data'
    src.mkdir(parents=True)
    (src / 'db.sqlite').write_bytes(os.urandom(10 * 1024))
    return src


@pytest.fixture
def make_config(tmp_path, source_dir):
    def _make(**overrides):
        values = dict(
            sources=(str(source_dir),),
            archive_dir=tmp_path / 'archive',
            work_dir=tmp_path / 'work',
            archive_root=str(tmp_path),
            hostname='test-host',
            timezone=UTC,
            filename_template='backup-%Y-%m-%dT%H-%M-%S.tar.gz',
        )
        values.update(overrides)
        return BackupConfiguration(**values)
    return _make


@pytest.fixture
def fixed_clock():
    return lambda: datetime(2024, 3, 1, 4, 0, 0, tzinfo=UTC)
