import signal
from types import SimpleNamespace

import pytest

from volume_backup import main as main_module
from volume_backup.models import FAILURE, PARTIAL_FAILURE, SUCCESS


@pytest.fixture
def backup_env(monkeypatch, tmp_path, source_dir):
    for key in ('AWS_S3_BUCKET_NAME', 'INFLUXDB_URL', 'NOTIFICATION_URLS', 'BACKUP_CUSTOM_LABEL', 'LOG_DIR'):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv('BACKUP_SOURCES', str(source_dir))
    monkeypatch.setenv('BACKUP_ARCHIVE', str(tmp_path / 'archive'))
    monkeypatch.setenv('BACKUP_CRON_EXPRESSION', '@daily')
    monkeypatch.setenv('TZ', 'UTC')
    return tmp_path


class StubExecutor:
    status = SUCCESS
    runs = 0

    def __init__(self, config):
        self.config = config

    def run(self):
        StubExecutor.runs += 1
        return SimpleNamespace(status=StubExecutor.status)


@pytest.fixture
def stub_executor(monkeypatch):
    StubExecutor.status = SUCCESS
    StubExecutor.runs = 0
    monkeypatch.setattr(main_module, 'BackupExecutor', StubExecutor)
    return StubExecutor


def test_check_accepts_valid_configuration(backup_env, stub_executor):
    assert main_module.main(['--check']) == main_module.EXIT_OK
    assert stub_executor.runs == 0


def test_invalid_cron_exits_with_configuration_error(backup_env, monkeypatch):
    monkeypatch.setenv('BACKUP_CRON_EXPRESSION', 'every day')
    assert main_module.main(['--check']) == main_module.EXIT_CONFIG_ERROR


def test_no_destination_exits_with_configuration_error(backup_env, monkeypatch):
    monkeypatch.setenv('BACKUP_ARCHIVE', '')
    assert main_module.main(['--check']) == main_module.EXIT_CONFIG_ERROR


def test_missing_sources_exit_with_configuration_error(backup_env, monkeypatch):
    monkeypatch.setenv('BACKUP_SOURCES', str(backup_env / 'nowhere'))
    assert main_module.main(['--now']) == main_module.EXIT_CONFIG_ERROR


@pytest.mark.parametrize('status,expected', [
    (SUCCESS, 0),
    (PARTIAL_FAILURE, 0),
    (FAILURE, 1),
])
def test_now_exit_code_follows_run_status(backup_env, stub_executor, status, expected):
    stub_executor.status = status
    assert main_module.main(['--now']) == expected
    assert stub_executor.runs == 1


def test_now_restores_signal_handlers(backup_env, stub_executor):
    before = signal.getsignal(signal.SIGTERM)
    main_module.main(['--now'])
    assert signal.getsignal(signal.SIGTERM) == before


def test_default_mode_runs_scheduler(backup_env, stub_executor, monkeypatch):
    started = []

    class StubScheduler:
        def __init__(self, expression, callback, timezone=None):
            started.append(expression)

        def start(self):
            started.append('start')

        def wait_for_run(self):
            started.append('waited')

    monkeypatch.setattr(main_module, 'BackupScheduler', StubScheduler)

    assert main_module.main([]) == main_module.EXIT_OK
    assert started == ['@daily', 'start', 'waited']


def test_now_and_check_are_exclusive():
    with pytest.raises(SystemExit):
        main_module.parse_args(['--now', '--check'])
