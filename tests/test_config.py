from pathlib import Path

import pytest

from volume_backup.config import (
    DEFAULT_FILENAME, DEFAULT_MEASUREMENT, DEFAULT_STOP_LABEL, BackupConfiguration, load_config, validate_config,
)
from volume_backup.errors import ConfigurationError


def test_defaults_enable_local_delivery_only():
    config = load_config({})
    assert config.sources == ('/backup',)
    assert config.cron_expression == '@daily'
    assert config.filename_template == DEFAULT_FILENAME
    assert config.archive_dir == Path('/archive')
    assert config.stop_label == DEFAULT_STOP_LABEL
    assert config.wait_seconds == 0
    assert config.hostname
    assert config.local_delivery_enabled
    assert not config.remote_delivery_enabled
    assert config.influxdb is None


def test_sources_split_on_whitespace_and_commas():
    config = load_config({'BACKUP_SOURCES': '/backup/a /backup/b,/backup/c'})
    assert config.sources == ('/backup/a', '/backup/b', '/backup/c')


def test_empty_archive_disables_local_delivery():
    config = load_config({'BACKUP_ARCHIVE': ''})
    assert config.archive_dir is None
    assert not config.local_delivery_enabled


def test_s3_needs_bucket_and_credentials():
    config = load_config({'AWS_S3_BUCKET_NAME': 'bucket'})
    assert config.s3 is None

    config = load_config({
        'AWS_S3_BUCKET_NAME': 'bucket',
        'AWS_ACCESS_KEY_ID': 'AKIA',
        'AWS_SECRET_ACCESS_KEY': 'secret',
        'AWS_DEFAULT_REGION': 'eu-west-1',
    })
    assert config.s3.bucket == 'bucket'
    assert config.s3.region == 'eu-west-1'
    assert config.s3.endpoint_url is None
    assert config.remote_delivery_enabled


def test_influxdb_needs_url_and_database():
    assert load_config({'INFLUXDB_URL': 'http://influx:8086'}).influxdb is None

    config = load_config({
        'INFLUXDB_URL': 'http://influx:8086/',
        'INFLUXDB_DB': 'backups',
        'INFLUXDB_CREDENTIALS': 'user:pass',
    })
    assert config.influxdb.url == 'http://influx:8086'
    assert config.influxdb.database == 'backups'
    assert config.influxdb.measurement == DEFAULT_MEASUREMENT


@pytest.mark.parametrize('raw', ['abc', '-1'])
def test_invalid_wait_is_a_configuration_error(raw):
    with pytest.raises(ConfigurationError):
        load_config({'BACKUP_WAIT_SECONDS': raw})


def test_custom_label_must_be_key_value():
    assert load_config({'BACKUP_CUSTOM_LABEL': 'stack=db'}).custom_label == 'stack=db'
    with pytest.raises(ConfigurationError):
        load_config({'BACKUP_CUSTOM_LABEL': 'stack'})


def test_notification_urls_keep_url_colons():
    config = load_config({'NOTIFICATION_URLS': 'mailto://user:pw@example.com json://hook.local'})
    assert config.notification_urls == ('mailto://user:pw@example.com', 'json://hook.local')


def test_validate_rejects_bad_schedule(tmp_path):
    config = BackupConfiguration(sources=(str(tmp_path),), archive_dir=tmp_path, cron_expression='61 * * * *')
    with pytest.raises(ConfigurationError):
        validate_config(config)


def test_validate_rejects_no_destination(tmp_path):
    config = BackupConfiguration(sources=(str(tmp_path),), archive_dir=None)
    with pytest.raises(ConfigurationError, match='No delivery destination'):
        validate_config(config)


def test_validate_rejects_missing_sources(tmp_path):
    config = BackupConfiguration(sources=(str(tmp_path / 'nope'),), archive_dir=tmp_path)
    with pytest.raises(ConfigurationError, match='sources'):
        validate_config(config)


def test_validate_accepts_one_existing_source(tmp_path):
    config = BackupConfiguration(sources=(str(tmp_path / 'nope'), str(tmp_path)), archive_dir=tmp_path)
    validate_config(config)


@pytest.mark.parametrize('template', ['%Y/%m/backup.tar.gz', 'nested/backup.tar.gz'])
def test_validate_rejects_template_with_directories(tmp_path, template):
    config = load_config({
        'BACKUP_SOURCES': str(tmp_path),
        'BACKUP_ARCHIVE': str(tmp_path / 'archive'),
        'BACKUP_FILENAME': template,
        'TZ': 'UTC',
    })
    with pytest.raises(ConfigurationError, match='plain file name'):
        validate_config(config)
