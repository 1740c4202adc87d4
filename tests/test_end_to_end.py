import logging
import tarfile

from conftest import FakeDockerClient, api_error
from volume_backup.containers import ContainerController
from volume_backup.delivery import DeliveryDispatcher
from volume_backup.executor import BackupExecutor
from volume_backup.metrics import MetricsReporter
from volume_backup.models import PARTIAL_FAILURE, SUCCESS
from volume_backup.notifications import Notifier


def _metric_lines(caplog):
    return [r.getMessage() for r in caplog.records if r.name == 'volume_backup.metrics' and 'containers_total=' in r.getMessage()]


def test_daily_local_backup_without_containers(make_config, fixed_clock, tmp_path, caplog):
    caplog.set_level(logging.INFO)
    config = make_config(cron_expression='@daily', filename_template='backup-%Y-%m-%d.tar.gz')
    executor = BackupExecutor(
        config,
        controller=ContainerController(config, client=FakeDockerClient()),
        notifier=Notifier([]),
        sleep=lambda seconds: None,
        clock=fixed_clock,
    )

    run = executor.run()

    assert run.status == SUCCESS
    archives = list((tmp_path / 'archive').iterdir())
    assert [p.name for p in archives] == ['backup-2024-03-01.tar.gz']
    with tarfile.open(archives[0], 'r:gz') as tf:
        member = tf.getmember('backup/data/db.sqlite')
        assert member.size == 10 * 1024

    record = MetricsReporter(config).collect(run)
    assert record['containers_total'] == 0
    assert record['containers_stopped'] == 0
    assert record['size_compressed_bytes'] > 0
    assert record['delivery_local'] == 'ok'

    lines = _metric_lines(caplog)
    assert len(lines) == 1
    assert 'status=success' in lines[0]
    assert 'containers_total=0' in lines[0]


def test_stop_failure_still_produces_and_delivers_archive(make_config, fixed_clock, tmp_path):
    client = FakeDockerClient()
    client.add('aaa', 'postgres')
    stuck = client.add('bbb', 'worker')
    stuck.stop_errors.append(api_error('Timeout'))
    stuck.stop_has_effect = False
    config = make_config()
    executor = BackupExecutor(
        config,
        controller=ContainerController(config, client=client),
        dispatcher=DeliveryDispatcher(config),
        notifier=Notifier([]),
        sleep=lambda seconds: None,
        clock=fixed_clock,
    )

    run = executor.run()

    assert run.status == PARTIAL_FAILURE
    assert [r.name for r in run.stopped] == ['postgres']
    assert [r.name for r in run.restarted] == ['postgres']
    assert client.calls.count(('start', 'worker')) == 0
    assert (tmp_path / 'archive' / 'backup-2024-03-01T04-00-00.tar.gz').exists()
    assert client.containers.get('aaa').status == 'running'
