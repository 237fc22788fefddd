"""
Backup executor - orchestrates one backup run of one project.

Workflow:
1. Create the run directory tree and attach the run log
2. Validate SOURCE_DIR
3. Dump the database (optional) and upload it
4. Archive the project tree
5. Encrypt the archive (optional)
6. Write the checksum manifest
7. Upload archive and manifest (optional)
8. Remove expired run directories
9. Upload the run log and send exactly one final status message
"""

import atexit
import html
import signal
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from projbackup import RUN_LOG_FORMAT, RUN_LOG_DATEFMT, PACKAGE_LOGGER
from projbackup.config import BackupConfig, BackupError
from .checksum import write_manifest
from .compression import build_transforms, compressor_extension, encryption_stage, ENCRYPTED_SUFFIX
from .layout import RunContext, LayoutError, make_timestamp
from .pipeline import Artifact, PipelineComposer, PipelineSpec, PriorityHints
from .retention import RetentionSweeper
from .sources import ArchiveStage, DatabaseDumpStage
from .splitter import split_if_oversize
from .storage import NotificationSink, create_sink


logger = logging.getLogger(__name__)

TRAPPED_SIGNALS = ('SIGTERM', 'SIGHUP', 'SIGINT')


class RunState(Enum):
    INIT = 'init'
    SOURCE_VALIDATED = 'source_validated'
    DB_DUMPED = 'db_dumped'
    PROJECT_ARCHIVED = 'project_archived'
    ENCRYPTED = 'encrypted'
    CHECKSUMMED = 'checksummed'
    UPLOADED = 'uploaded'
    RETAINED = 'retained'
    DONE = 'done'
    FAILED = 'failed'


class RunAborted(BackupError):
    """Raised when the run receives a termination signal."""

    def __init__(self, signum: int):
        self.signum = signum
        self.exit_code = 128 + signum
        super().__init__(f"Received signal {signal.Signals(signum).name}")


@dataclass
class RunResult:
    """Outcome of a backup run."""

    exit_code: int
    state: RunState
    failed_state: Optional[RunState] = None
    error: Optional[BaseException] = None
    run: Optional[RunContext] = None
    artifacts: Dict[str, List[Artifact]] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def _format_size(size_bytes: int) -> str:
    return f"{size_bytes / 1024 / 1024:.2f} MB"


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a project.
    """

    def __init__(self, config: BackupConfig, sink: Optional[NotificationSink] = None,
                 composer: Optional[PipelineComposer] = None, timestamp: Optional[str] = None):
        """
        Initialize backup executor.

        Args:
            config: Run configuration
            sink: Delivery channel (default: built from config)
            composer: Pipeline runner (default: with config's nice/ionice hints)
            timestamp: Run timestamp (default: now)
        """
        self.config = config
        self.timestamp = timestamp
        self.sink = sink
        self.composer = composer or PipelineComposer(PriorityHints(
            nice_level=config.nice_level,
            ionice_class=config.ionice_class,
            ionice_priority=config.ionice_priority,
        ))

        self.run = None
        self.state = RunState.INIT
        self.failed_state = None
        self.error = None
        self.artifacts = {}
        self.terminal_notifications = 0

        self._finalized = False
        self._finalizing = False
        self._late_signal = None
        self._log_handler = None

    @property
    def project(self) -> str:
        return self.config.project_name

    def execute(self) -> RunResult:
        """
        Execute the backup run.

        Never raises for run failures; the outcome is in the returned
        RunResult and a single final status message is sent either way.

        Returns:
            RunResult with exit code, reached state and artifacts
        """
        self.timestamp = self.timestamp or make_timestamp()
        if self.sink is None:
            self.sink = create_sink(self.config, self.timestamp)

        exit_code = 1
        atexit.register(self._finalize_at_exit)

        with self._trap_signals():
            try:
                self.run = RunContext.create(self.config.backup_dir, self.project, self.timestamp)
                self._attach_run_log()
                self._execute_workflow()
                exit_code = 0

            except BackupError as e:
                exit_code = e.exit_code
                self._fail(e)
                logger.error(f"Aborted (exit={exit_code}) during {self.failed_state.value}: {e}")

            except Exception as e:
                exit_code = 1
                self._fail(e)
                logger.exception(f"Aborted (exit={exit_code}) during {self.failed_state.value}: unexpected error")

            finally:
                exit_code = self._finalize(exit_code)

        return RunResult(
            exit_code=exit_code,
            state=self.state,
            failed_state=self.failed_state,
            error=self.error,
            run=self.run,
            artifacts=self.artifacts,
        )

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        config = self.config
        project = html.escape(self.project)

        logger.info(f"=== {self.project} backup started {self.timestamp} ===")
        self.sink.send_status(f"🚀 Starting backup of <b>{project}</b> at <code>{self.timestamp}</code>")

        archive = ArchiveStage(config.source_dir, config.excludes)
        self._advance(RunState.SOURCE_VALIDATED)

        if config.enable_db_backup:
            db_artifact = self._dump_database()
            self._advance(RunState.DB_DUMPED)
            if self.sink.enabled:
                logger.info("Uploading DB dump...")
                self._upload(
                    'db', db_artifact,
                    f"DB dump {self.project} {self.timestamp} (database: {config.db_name})",
                    f"DB SHA-256 {self.project} {self.timestamp}",
                )
        else:
            logger.info("DB: disabled")

        artifact = self._archive_project(archive)
        self._advance(RunState.PROJECT_ARCHIVED)

        if config.enable_gpg:
            logger.info(f"Encrypting project archive for {config.gpg_recipient}")
            artifact = self.composer.replace(
                artifact, [encryption_stage(config.gpg_recipient)], ENCRYPTED_SUFFIX
            )
            self.artifacts['project'] = [artifact]
            self._advance(RunState.ENCRYPTED)

        logger.info("Checksumming project archive...")
        manifest = artifact.path.with_name(artifact.name + '.sha256')
        artifact = artifact.with_manifest(write_manifest(manifest, [artifact.path]))
        self.artifacts['project'] = [artifact]
        self._advance(RunState.CHECKSUMMED)

        if self.sink.enabled:
            logger.info("Uploading project archive...")
            self._upload(
                'project', artifact,
                f"Backup {self.project} {self.timestamp}",
                f"SHA-256 {self.project} {self.timestamp}",
            )
            self._advance(RunState.UPLOADED)
        else:
            logger.warning("Notification channel not configured; skipping upload.")

        self._apply_retention()
        self._advance(RunState.RETAINED)

        logger.info(f"=== {self.project} backup completed {self.timestamp} ===")
        self._advance(RunState.DONE)

    def _dump_database(self) -> Artifact:
        """
        Dump the database through the compress/encrypt pipeline.

        Returns:
            Final DB artifact with its manifest

        Raises:
            ConfigError: If DB_NAME is not set
            ToolMissingError: If a required tool is missing
            PipelineError: If any stage fails
        """
        config = self.config
        dump = DatabaseDumpStage(config, self.run)

        destination = self.run.db_dump_path(
            compressor_extension(config.compressor), encrypted=config.enable_gpg
        )
        logger.info(f"DB: dumping -> {destination}")

        with dump.credentials() as credentials_path:
            spec = PipelineSpec(dump.stage(credentials_path), build_transforms(config))
            artifact = self.composer.execute(spec, destination)

        artifact = artifact.with_manifest(write_manifest(self.run.db_manifest_path, [artifact.path]))
        logger.info(f"DB: artifact {_format_size(artifact.size_bytes)}")

        self.artifacts['db'] = [artifact]
        return artifact

    def _archive_project(self, archive: ArchiveStage) -> Artifact:
        destination = self.run.project_archive_path(compressor_extension(self.config.compressor))
        logger.info(f"Project: archiving -> {destination}")

        spec = PipelineSpec(archive.stage(), build_transforms(self.config, encrypt=False))
        artifact = self.composer.execute(spec, destination)
        logger.info(f"Project: archive {_format_size(artifact.size_bytes)}")

        self.artifacts['project'] = [artifact]
        return artifact

    def _upload(self, group: str, artifact: Artifact, caption: str, manifest_caption: str):
        """
        Split an artifact if needed and send the parts and its manifest.

        Args:
            group: Artifact group key ('db' or 'project')
            artifact: Finished artifact with a checksum manifest
            caption: Document caption
            manifest_caption: Caption for the checksum manifest
        """
        try:
            parts = split_if_oversize(artifact, self.config.split_size_mb)
        except OSError as e:
            raise LayoutError(f"Failed to split {artifact.name}: {e}")

        self.artifacts[group] = parts

        if len(parts) == 1:
            self.sink.send_document(parts[0].path, caption)
        else:
            for index, part in enumerate(parts, start=1):
                self.sink.send_document(part.path, f"{caption} (part {index})")

        if artifact.checksum_manifest is not None:
            self.sink.send_document(artifact.checksum_manifest, manifest_caption)

    def _apply_retention(self):
        if self.config.retain_days is None:
            logger.info("Retention: RETAIN_DAYS not set, skipping")
            return

        sweeper = RetentionSweeper(self.run.project_root)
        sweeper.sweep(self.config.retain_days, active_run_dir=self.run.run_dir)

    def _advance(self, state: RunState):
        logger.debug(f"State: {self.state.value} -> {state.value}")
        self.state = state

    def _fail(self, error: BaseException):
        self.error = error
        self.failed_state = self.state
        self.state = RunState.FAILED

    def _finalize(self, exit_code: int) -> int:
        """
        Upload the run log and send the final status message.

        Runs at most once per executor, whichever exit path gets here first.
        Termination signals received meanwhile are recorded, not raised; one
        that arrives before the status message is sent turns a success
        into ``128 + signum``.

        Args:
            exit_code: Exit status of the run so far

        Returns:
            Final exit status
        """
        if self._finalized:
            return exit_code
        self._finalized = True
        self._finalizing = True
        atexit.unregister(self._finalize_at_exit)

        log_path = self._detach_run_log()
        project = html.escape(self.project)

        try:
            if log_path is not None and log_path.is_file():
                self.sink.send_document(log_path, f"Backup log for {self.project} ({self.timestamp})")

            exit_code = self._apply_late_signal(exit_code)
            if exit_code == 0:
                self.sink.send_status(f"✅ Backup completed successfully for <b>{project}</b>")
            else:
                self.sink.send_status(f"❌ Backup FAILED for <b>{project}</b> (exit code: {exit_code})")
        finally:
            self.terminal_notifications += 1

        return exit_code

    def _apply_late_signal(self, exit_code: int) -> int:
        if self._late_signal is None or exit_code != 0:
            return exit_code

        logger.warning(f"Received {signal.Signals(self._late_signal).name} while finalizing")
        self._fail(RunAborted(self._late_signal))
        return self.error.exit_code

    def _finalize_at_exit(self):
        # Interpreter is exiting without execute() having finished
        if self._finalized:
            return
        if self.state is not RunState.FAILED:
            self._fail(RuntimeError("process exited before the run finished"))
        self._finalize(1)

    def _attach_run_log(self):
        level = getattr(logging, self.config.log_level, logging.INFO)
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        if package_logger.getEffectiveLevel() > level:
            package_logger.setLevel(level)

        handler = logging.FileHandler(self.run.log_path, encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(RUN_LOG_FORMAT, RUN_LOG_DATEFMT))
        package_logger.addHandler(handler)
        self._log_handler = handler

    def _detach_run_log(self):
        handler = self._log_handler
        if handler is None:
            return None

        self._log_handler = None
        logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
        handler.flush()
        handler.close()
        return self.run.log_path

    @contextmanager
    def _trap_signals(self):
        """Turn termination signals into RunAborted while the run is active."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def handler(signum, frame):
            if self._finalizing:
                # Finalizer is running; it reads _late_signal
                self._late_signal = signum
                return
            raise RunAborted(signum)

        previous = {}
        for name in TRAPPED_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is not None:
                previous[signum] = signal.signal(signum, handler)

        try:
            yield
        finally:
            for signum, old_handler in previous.items():
                signal.signal(signum, old_handler)


def execute_backup(config: BackupConfig, sink: Optional[NotificationSink] = None) -> RunResult:
    """
    Run a backup for the configured project.

    Args:
        config: Run configuration
        sink: Optional delivery channel override

    Returns:
        RunResult with execution results
    """
    executor = BackupExecutor(config, sink=sink)
    return executor.execute()
