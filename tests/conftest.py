"""
Shared pytest fixtures for projbackup tests.

This module provides fixtures for:
- Source directory trees and backup destinations
- Configuration factories
- A recording notification sink
- Mock fixtures for external services (S3)
"""

from pathlib import Path

import pytest
import boto3
from moto import mock_aws

from projbackup.config import BackupConfig
from projbackup.backup.pipeline import PipelineComposer, Stage
from projbackup.backup.storage import NotificationSink


class RecordingSink(NotificationSink):
    """Sink that records every delivery instead of sending it."""

    channel_name = 'recording'

    def __init__(self, enabled=True):
        self._enabled = enabled
        self.messages = []
        self.documents = []

    @property
    def enabled(self):
        return self._enabled

    def _send_status(self, text):
        self.messages.append(text)

    def _send_document(self, path, caption):
        self.documents.append((Path(path).name, caption))


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a project source tree.

    Creates:
    - file00.txt .. file09.txt (10 files)
    - node_modules/dep.js and app.pyc (excluded in tests)
    """
    source = tmp_path / 'source'
    source.mkdir()

    for i in range(10):
        (source / f'file{i:02d}.txt').write_text(f'content of file {i}\n' * 50)

    (source / 'node_modules').mkdir()
    (source / 'node_modules' / 'dep.js').write_text('module.exports = {}')
    (source / 'app.pyc').write_bytes(b'compiled python')

    return source


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def settings(source_tree, backup_dir):
    """Minimal raw settings for a valid configuration."""
    return {
        'PROJECT_NAME': 'acme',
        'SOURCE_DIR': str(source_tree),
        'BACKUP_DIR': str(backup_dir),
        'COMPRESSOR': '',
        'EXCLUDES': 'node_modules *.pyc',
        'ENABLE_GPG': 'no',
        'ENABLE_DB_BACKUP': 'no',
    }


@pytest.fixture
def make_config(settings):
    """Factory building a BackupConfig from the base settings plus overrides."""

    def _make(**overrides):
        merged = dict(settings)
        merged.update(overrides)
        return BackupConfig.from_mapping(merged)

    return _make


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def composer():
    """Composer without nice/ionice so tests do not depend on them."""
    return PipelineComposer()


@pytest.fixture
def fake_gpg_stage():
    """Stand-in for gpg that marks its output so encryption is visible."""
    return Stage('gpg', ('sh', '-c', 'printf "GPG:"; cat'))


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3
