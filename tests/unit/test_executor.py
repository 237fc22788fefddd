"""
Unit tests for backup executor (projbackup/backup/executor.py).

Tests BackupExecutor for orchestrating complete backup runs end to end with
real tar/sh pipelines and a recording sink.
"""

import os
import shutil
import signal
import hashlib
import tarfile
import time
from unittest.mock import patch

import pytest

from projbackup.config import ConfigError
from projbackup.backup.executor import (
    BackupExecutor,
    RunAborted,
    RunState,
    execute_backup
)
from projbackup.backup.layout import RunCollisionError
from projbackup.backup.pipeline import PipelineError, PriorityHints, Stage
from projbackup.backup.sources import ArchiveStage, DatabaseDumpStage
from projbackup.backup.storage import NullSink


TS = '2024-01-15_02-30-00'

requires_zstd = pytest.mark.skipif(shutil.which('zstd') is None, reason='zstd not installed')


def run_backup(config, sink, composer, timestamp=TS):
    executor = BackupExecutor(config, sink=sink, composer=composer, timestamp=timestamp)
    return executor, executor.execute()


def manifest_digest(manifest_path):
    digest, name = manifest_path.read_text().rstrip('\n').split('  ')
    return digest, name


def terminal_messages(sink):
    return [m for m in sink.messages if 'completed successfully' in m or 'FAILED' in m]


class TestSuccessfulRun:

    def test_plain_tar_run(self, make_config, recording_sink, composer):
        config = make_config()

        executor, result = run_backup(config, recording_sink, composer)

        assert result.exit_code == 0
        assert result.success
        assert result.state is RunState.DONE
        archive = result.run.project_dir / f'acme-project-{TS}.tar'
        assert archive.exists()
        assert sorted(p.name for p in result.run.project_dir.iterdir()) == [
            archive.name, archive.name + '.sha256'
        ]

    def test_archive_honours_excludes(self, make_config, recording_sink, composer):
        _, result = run_backup(make_config(), recording_sink, composer)

        archive = result.run.project_dir / f'acme-project-{TS}.tar'
        with tarfile.open(archive) as tar:
            names = tar.getnames()

        assert './file00.txt' in names
        assert not any('node_modules' in n or n.endswith('.pyc') for n in names)

    @requires_zstd
    def test_scenario_zstd_without_gpg(self, make_config, recording_sink, composer):
        config = make_config(COMPRESSOR='zstd', ENABLE_GPG='no')

        _, result = run_backup(config, recording_sink, composer)

        assert result.exit_code == 0
        files = sorted(p.name for p in result.run.project_dir.iterdir())
        archive_name = f'acme-project-{TS}.tar.zst'
        assert files == [archive_name, archive_name + '.sha256']

        digest, name = manifest_digest(result.run.project_dir / (archive_name + '.sha256'))
        assert name == archive_name
        assert digest == hashlib.sha256((result.run.project_dir / archive_name).read_bytes()).hexdigest()

    def test_manifest_matches_final_artifact(self, make_config, recording_sink, composer):
        _, result = run_backup(make_config(), recording_sink, composer)

        artifact = result.artifacts['project'][0]
        digest, name = manifest_digest(artifact.checksum_manifest)

        assert name == artifact.name
        assert digest == hashlib.sha256(artifact.path.read_bytes()).hexdigest()

    def test_uploads_archive_manifest_and_log(self, make_config, recording_sink, composer):
        _, result = run_backup(make_config(), recording_sink, composer)

        names = [name for name, _ in recording_sink.documents]
        assert names == [
            f'acme-project-{TS}.tar',
            f'acme-project-{TS}.tar.sha256',
            f'backup-{TS}.log',
        ]
        assert recording_sink.documents[0][1] == f'Backup acme {TS}'
        assert result.state is RunState.DONE

    def test_start_and_single_success_message(self, make_config, recording_sink, composer):
        executor, _ = run_backup(make_config(), recording_sink, composer)

        assert 'Starting backup of <b>acme</b>' in recording_sink.messages[0]
        assert terminal_messages(recording_sink) == [
            '✅ Backup completed successfully for <b>acme</b>'
        ]
        assert executor.terminal_notifications == 1

    def test_run_log_written(self, make_config, recording_sink, composer):
        _, result = run_backup(make_config(), recording_sink, composer)

        log = result.run.log_path.read_text()
        assert f'=== acme backup started {TS} ===' in log
        assert f'=== acme backup completed {TS} ===' in log
        assert 'INFO ' in log

    def test_run_log_handler_detached(self, make_config, recording_sink, composer):
        import logging

        before = list(logging.getLogger('projbackup').handlers)
        run_backup(make_config(), recording_sink, composer)

        assert logging.getLogger('projbackup').handlers == before

    def test_unconfigured_sink_skips_upload(self, make_config, composer):
        _, result = run_backup(make_config(SPLIT_SIZE_MB='1'), NullSink(), composer)

        assert result.exit_code == 0
        assert result.state is RunState.DONE
        assert len(result.artifacts['project']) == 1

    def test_execute_backup_builds_sink_from_config(self, make_config):
        config = make_config()

        with patch.object(PriorityHints, 'wrap', side_effect=lambda argv: list(argv)) as mock_wrap:
            result = execute_backup(config)

        assert result.exit_code == 0
        assert result.state is RunState.DONE
        assert mock_wrap.called
        assert [p.name for p in result.run.project_dir.iterdir() if p.name.endswith('.tar')] == [
            f'acme-project-{result.run.timestamp}.tar'
        ]

    def test_finalize_at_exit_fails_unfinished_run(self, make_config, recording_sink, composer):
        executor = BackupExecutor(make_config(), sink=recording_sink, composer=composer, timestamp=TS)

        executor._finalize_at_exit()

        assert executor.state is RunState.FAILED
        assert terminal_messages(recording_sink) == [
            '❌ Backup FAILED for <b>acme</b> (exit code: 1)'
        ]


class TestSplitUpload:

    def test_scenario_oversize_artifact_is_split(self, make_config, recording_sink, composer, source_tree):
        (source_tree / 'blob.bin').write_bytes(os.urandom(3 * 1024 * 1024))
        config = make_config(SPLIT_SIZE_MB='1')

        _, result = run_backup(config, recording_sink, composer)

        assert result.exit_code == 0
        archive_name = f'acme-project-{TS}.tar'
        project_dir = result.run.project_dir
        assert not (project_dir / archive_name).exists()

        parts = sorted(p for p in project_dir.iterdir() if '.part' in p.name)
        assert [p.name for p in parts] == [f'{archive_name}.part{i:03d}' for i in range(len(parts))]
        assert len(parts) == 4

        digest, name = manifest_digest(project_dir / (archive_name + '.sha256'))
        joined = b''.join(p.read_bytes() for p in parts)
        assert name == archive_name
        assert hashlib.sha256(joined).hexdigest() == digest

    def test_parts_uploaded_in_order_with_captions(self, make_config, recording_sink, composer, source_tree):
        (source_tree / 'blob.bin').write_bytes(os.urandom(2 * 1024 * 1024))

        run_backup(make_config(SPLIT_SIZE_MB='1'), recording_sink, composer)

        part_docs = [(n, c) for n, c in recording_sink.documents if '.part' in n]
        assert [c for _, c in part_docs] == [
            f'Backup acme {TS} (part {i})' for i in range(1, len(part_docs) + 1)
        ]
        assert [n for n, _ in part_docs] == sorted(n for n, _ in part_docs)


class TestEncryption:

    def test_scenario_gpg_replaces_plaintext(self, make_config, recording_sink, composer, fake_gpg_stage):
        config = make_config(ENABLE_GPG='yes', GPG_RECIPIENT='ops@example.com')

        with patch('projbackup.backup.executor.encryption_stage', return_value=fake_gpg_stage) as mock_stage:
            _, result = run_backup(config, recording_sink, composer)

        mock_stage.assert_called_once_with('ops@example.com')
        assert result.exit_code == 0

        project_dir = result.run.project_dir
        plaintext = project_dir / f'acme-project-{TS}.tar'
        encrypted = project_dir / f'acme-project-{TS}.tar.gpg'
        assert encrypted.exists()
        assert encrypted.read_bytes().startswith(b'GPG:')
        assert not plaintext.exists()

        digest, name = manifest_digest(project_dir / f'acme-project-{TS}.tar.gpg.sha256')
        assert name == encrypted.name
        assert digest == hashlib.sha256(encrypted.read_bytes()).hexdigest()

    def test_failed_encryption_fails_run(self, make_config, recording_sink, composer):
        config = make_config(ENABLE_GPG='yes', GPG_RECIPIENT='ops@example.com')
        broken = Stage('gpg', ('sh', '-c', 'cat >/dev/null; exit 2'))

        with patch('projbackup.backup.executor.encryption_stage', return_value=broken):
            executor, result = run_backup(config, recording_sink, composer)

        assert result.exit_code == 2
        assert isinstance(result.error, PipelineError)
        assert result.failed_state is RunState.PROJECT_ARCHIVED
        assert not (result.run.project_dir / f'acme-project-{TS}.tar.gpg').exists()
        assert not any(p.name.endswith('.sha256') for p in result.run.project_dir.iterdir())
        assert executor.terminal_notifications == 1


class TestDatabaseBackup:

    @pytest.fixture
    def fake_dump(self):
        """Pretend mysqldump exists and emits a small SQL script."""
        stage = Stage('mysqldump', ('sh', '-c', 'printf "CREATE TABLE t (id int);\\n"'))
        with patch('projbackup.backup.sources.DUMP_TOOL', 'sh'), \
                patch.object(DatabaseDumpStage, 'stage', return_value=stage) as mock_stage:
            yield mock_stage

    def test_scenario_missing_db_name_fails_before_archive(self, make_config, recording_sink, composer):
        config = make_config(ENABLE_DB_BACKUP='yes', DB_NAME='')

        with patch.object(ArchiveStage, 'stage') as mock_archive:
            executor, result = run_backup(config, recording_sink, composer)

        assert result.exit_code == 1
        assert isinstance(result.error, ConfigError)
        assert result.state is RunState.FAILED
        assert result.failed_state is RunState.SOURCE_VALIDATED
        mock_archive.assert_not_called()
        assert list(result.run.project_dir.iterdir()) == []
        assert terminal_messages(recording_sink) == [
            '❌ Backup FAILED for <b>acme</b> (exit code: 1)'
        ]

    def test_db_dump_uploaded_with_manifest(self, make_config, recording_sink, composer, fake_dump):
        config = make_config(ENABLE_DB_BACKUP='yes', DB_NAME='shop', DB_PASS='hunter2')

        _, result = run_backup(config, recording_sink, composer)

        assert result.exit_code == 0
        dump = result.run.db_dir / f'acme-db-{TS}.sql'
        assert dump.read_text() == 'CREATE TABLE t (id int);\n'

        digest, name = manifest_digest(result.run.db_manifest_path)
        assert name == dump.name
        assert digest == hashlib.sha256(dump.read_bytes()).hexdigest()

        names = [n for n, _ in recording_sink.documents]
        assert names[:2] == [dump.name, f'db-{TS}.sha256']
        assert recording_sink.documents[0][1] == f'DB dump acme {TS} (database: shop)'

    def test_credentials_removed_and_not_logged(self, make_config, recording_sink, composer, fake_dump):
        config = make_config(ENABLE_DB_BACKUP='yes', DB_NAME='shop', DB_PASS='hunter2')

        _, result = run_backup(config, recording_sink, composer)

        assert not result.run.credentials_path.exists()
        assert 'hunter2' not in result.run.log_path.read_text()
        credentials_arg = fake_dump.call_args[0][0]
        assert credentials_arg == result.run.credentials_path

    def test_db_pipeline_encrypts_in_stream(self, make_config, recording_sink, composer, fake_dump, fake_gpg_stage):
        config = make_config(
            ENABLE_DB_BACKUP='yes', DB_NAME='shop',
            ENABLE_GPG='yes', GPG_RECIPIENT='ops@example.com'
        )

        with patch('projbackup.backup.compression.encryption_stage', return_value=fake_gpg_stage), \
                patch('projbackup.backup.executor.encryption_stage', return_value=fake_gpg_stage):
            _, result = run_backup(config, recording_sink, composer)

        assert result.exit_code == 0
        assert sorted(p.name for p in result.run.db_dir.iterdir()) == [
            f'acme-db-{TS}.sql.gpg', f'db-{TS}.sha256'
        ]

    def test_failing_dump_fails_run_with_tool_status(self, make_config, recording_sink, composer):
        broken = Stage('mysqldump', ('sh', '-c', 'echo "Access denied" >&2; exit 2'))
        config = make_config(ENABLE_DB_BACKUP='yes', DB_NAME='shop')

        with patch('projbackup.backup.sources.DUMP_TOOL', 'sh'), \
                patch.object(DatabaseDumpStage, 'stage', return_value=broken), \
                patch.object(ArchiveStage, 'stage') as mock_archive:
            _, result = run_backup(config, recording_sink, composer)

        assert result.exit_code == 2
        assert result.failed_state is RunState.SOURCE_VALIDATED
        mock_archive.assert_not_called()
        assert list(result.run.db_dir.iterdir()) == []
        assert not result.run.credentials_path.exists()


class TestFailures:

    def test_missing_source_dir_exits_2(self, make_config, recording_sink, composer, tmp_path):
        config = make_config(SOURCE_DIR=str(tmp_path / 'gone'))

        executor, result = run_backup(config, recording_sink, composer)

        assert result.exit_code == 2
        assert result.failed_state is RunState.INIT
        assert terminal_messages(recording_sink) == [
            '❌ Backup FAILED for <b>acme</b> (exit code: 2)'
        ]
        assert 'SOURCE_DIR does not exist' in result.run.log_path.read_text()

    def test_archive_failure_propagates_exit_status(self, make_config, recording_sink, composer):
        broken = Stage('tar', ('sh', '-c', 'printf partial; exit 5'))

        with patch.object(ArchiveStage, 'stage', return_value=broken):
            executor, result = run_backup(make_config(), recording_sink, composer)

        assert result.exit_code == 5
        assert result.failed_state is RunState.SOURCE_VALIDATED
        assert list(result.run.project_dir.iterdir()) == []
        assert executor.terminal_notifications == 1

    def test_failure_still_uploads_log(self, make_config, recording_sink, composer):
        broken = Stage('tar', ('sh', '-c', 'exit 5'))

        with patch.object(ArchiveStage, 'stage', return_value=broken):
            _, result = run_backup(make_config(), recording_sink, composer)

        assert (f'backup-{TS}.log', f'Backup log for acme ({TS})') in recording_sink.documents
        assert 'Aborted (exit=5)' in result.run.log_path.read_text()

    def test_missing_tool_exits_127(self, make_config, recording_sink, composer):
        missing = Stage('tar', ('no-such-tar-binary',))

        with patch.object(ArchiveStage, 'stage', return_value=missing):
            _, result = run_backup(make_config(), recording_sink, composer)

        assert result.exit_code == 127

    def test_same_second_collision_fails_once(self, make_config, recording_sink, composer, backup_dir):
        existing = backup_dir / 'acme' / TS
        existing.mkdir(parents=True)
        (existing / 'keep.txt').write_text('earlier run')

        executor, result = run_backup(make_config(), recording_sink, composer)

        assert result.exit_code == 1
        assert isinstance(result.error, RunCollisionError)
        assert (existing / 'keep.txt').read_text() == 'earlier run'
        assert executor.terminal_notifications == 1
        assert len(terminal_messages(recording_sink)) == 1

    def test_unexpected_error_is_trapped(self, make_config, recording_sink, composer):
        with patch.object(BackupExecutor, '_apply_retention', side_effect=RuntimeError('boom')):
            executor, result = run_backup(make_config(), recording_sink, composer)

        assert result.exit_code == 1
        assert result.failed_state is RunState.UPLOADED
        assert executor.terminal_notifications == 1

    def test_termination_signal_is_a_failure(self, make_config, recording_sink, composer):
        def deliver_sigterm(*args, **kwargs):
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(1)

        previous = signal.getsignal(signal.SIGTERM)
        with patch.object(BackupExecutor, '_apply_retention', side_effect=deliver_sigterm):
            executor, result = run_backup(make_config(), recording_sink, composer)

        assert isinstance(result.error, RunAborted)
        assert result.exit_code == 128 + signal.SIGTERM
        assert terminal_messages(recording_sink) == [
            f'❌ Backup FAILED for <b>acme</b> (exit code: {128 + signal.SIGTERM})'
        ]
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_signal_while_uploading_log_still_reports(self, make_config, recording_sink, composer):
        class SignalDuringLogUpload(type(recording_sink)):
            def _send_document(self, path, caption):
                super()._send_document(path, caption)
                if path.name.startswith('backup-'):
                    os.kill(os.getpid(), signal.SIGTERM)
                    time.sleep(0.2)

        sink = SignalDuringLogUpload()
        executor, result = run_backup(make_config(), sink, composer)

        assert result.exit_code == 128 + signal.SIGTERM
        assert isinstance(result.error, RunAborted)
        assert result.state is RunState.FAILED
        assert terminal_messages(sink) == [
            f'❌ Backup FAILED for <b>acme</b> (exit code: {128 + signal.SIGTERM})'
        ]
        assert executor.terminal_notifications == 1

    def test_signal_while_finalizing_keeps_failure_status(self, make_config, recording_sink, composer):
        class SignalDuringLogUpload(type(recording_sink)):
            def _send_document(self, path, caption):
                super()._send_document(path, caption)
                os.kill(os.getpid(), signal.SIGTERM)
                time.sleep(0.2)

        sink = SignalDuringLogUpload()
        broken = Stage('tar', ('sh', '-c', 'exit 5'))
        with patch.object(ArchiveStage, 'stage', return_value=broken):
            _, result = run_backup(make_config(), sink, composer)

        assert result.exit_code == 5
        assert terminal_messages(sink) == ['❌ Backup FAILED for <b>acme</b> (exit code: 5)']

    def test_signal_after_status_message_is_ignored(self, make_config, recording_sink, composer):
        class SignalAfterStatus(type(recording_sink)):
            def _send_status(self, text):
                super()._send_status(text)
                if 'completed successfully' in text:
                    os.kill(os.getpid(), signal.SIGTERM)
                    time.sleep(0.2)

        sink = SignalAfterStatus()
        executor, result = run_backup(make_config(), sink, composer)

        assert result.exit_code == 0
        assert result.state is RunState.DONE
        assert executor.terminal_notifications == 1

    def test_invalid_s3_region_still_notifies(self, make_config, composer):
        config = make_config(TG_BOT_TOKEN='1:a', TG_CHAT_ID='5', S3_BUCKET='b', S3_REGION='eu west 1')

        with patch('requests.Session.post') as mock_post:
            mock_post.return_value.status_code = 200
            executor = BackupExecutor(config, composer=composer, timestamp=TS)
            result = executor.execute()

        assert result.exit_code == 0
        texts = [c[1]['json']['text'] for c in mock_post.call_args_list if 'json' in c[1]]
        assert texts[-1] == '✅ Backup completed successfully for <b>acme</b>'

    def test_finalize_runs_only_once(self, make_config, recording_sink, composer):
        executor, _ = run_backup(make_config(), recording_sink, composer)

        executor._finalize(1)
        executor._finalize_at_exit()

        assert executor.terminal_notifications == 1
        assert len(terminal_messages(recording_sink)) == 1

    def test_atexit_safety_net_registered_and_removed(self, make_config, recording_sink, composer):
        with patch('projbackup.backup.executor.atexit') as mock_atexit:
            executor, _ = run_backup(make_config(), recording_sink, composer)

        registered = mock_atexit.register.call_args[0][0]
        mock_atexit.unregister.assert_called_once_with(registered)
        assert registered == executor._finalize_at_exit

    def test_notification_failure_does_not_fail_run(self, make_config, composer):
        from projbackup.backup.storage import TelegramSink
        import requests

        sink = TelegramSink('1:a', '5')
        with patch.object(sink.session, 'post', side_effect=requests.ConnectionError('offline')):
            _, result = run_backup(make_config(), sink, composer)

        assert result.exit_code == 0
        assert result.state is RunState.DONE


class TestRetentionStep:

    def test_old_runs_removed_active_kept(self, make_config, recording_sink, composer, backup_dir):
        project_root = backup_dir / 'acme'
        old = project_root / '2023-11-01_02-00-00'
        old.mkdir(parents=True)
        stamp = time.time() - 40 * 24 * 3600
        os.utime(old, (stamp, stamp))

        _, result = run_backup(make_config(RETAIN_DAYS='30'), recording_sink, composer)

        assert result.state is RunState.DONE
        assert not old.exists()
        assert result.run.run_dir.exists()

    def test_retention_skipped_when_unset(self, make_config, recording_sink, composer, backup_dir):
        old = backup_dir / 'acme' / '2020-01-01_00-00-00'
        old.mkdir(parents=True)
        stamp = time.time() - 400 * 24 * 3600
        os.utime(old, (stamp, stamp))

        _, result = run_backup(make_config(), recording_sink, composer)

        assert old.exists()
        assert 'RETAIN_DAYS not set' in result.run.log_path.read_text()
