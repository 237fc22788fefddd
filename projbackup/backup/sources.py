"""
Source stages for backup pipelines.

Supports:
- DatabaseDumpStage: consistent MySQL/MariaDB export via mysqldump
- ArchiveStage: tar stream of the project source directory
"""

import os
import shutil
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from projbackup.config import BackupConfig, ConfigError
from .layout import RunContext
from .pipeline import Stage, ToolMissingError


logger = logging.getLogger(__name__)

DUMP_TOOL = 'mysqldump'
ARCHIVE_TOOL = 'tar'


class SourceMissingError(ConfigError):
    """Raised when SOURCE_DIR does not exist."""

    exit_code = 2


class DatabaseDumpStage:
    """
    Source stage producing a single-transaction database export.

    Credentials are written to a private client option file for the duration
    of the dump and never appear on the command line.
    """

    def __init__(self, config: BackupConfig, run: RunContext):
        """
        Initialize the dump stage.

        Args:
            config: Run configuration (DB_* settings)
            run: Current run, used to place the credential file

        Raises:
            ConfigError: If DB_NAME is not set
            ToolMissingError: If mysqldump is not installed
        """
        if not config.db_name:
            raise ConfigError("DB: missing DB_NAME")
        if not shutil.which(DUMP_TOOL):
            raise ToolMissingError(DUMP_TOOL)

        self.config = config
        self.run = run

    def _option_lines(self) -> Sequence[str]:
        config = self.config
        lines = ['[client]', f"user={config.db_user}"]
        if config.db_pass:
            lines.append(f"password={config.db_pass}")
        if config.db_host:
            lines.append(f"host={config.db_host}")
        if config.db_port:
            lines.append(f"port={config.db_port}")
        if config.db_socket:
            lines.append(f"socket={config.db_socket}")
        return lines

    @contextmanager
    def credentials(self) -> Iterator[Path]:
        """
        Write the client option file and remove it on exit.

        Yields:
            Path to the option file (mode 0600)
        """
        path = self.run.credentials_path
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            with os.fdopen(fd, 'w') as f:
                f.write('\n'.join(self._option_lines()) + '\n')
            os.chmod(path, 0o600)
            yield path
        finally:
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def stage(self, credentials_path: Path) -> Stage:
        argv = [
            DUMP_TOOL,
            f"--defaults-extra-file={credentials_path}",
            '--single-transaction',
            '--quick',
            '--routines',
            '--triggers',
            '--events',
            '--set-gtid-purged=OFF',
        ]
        argv.extend(self.config.db_extra_opts)
        argv.append(self.config.db_name)
        return Stage(DUMP_TOOL, argv)


class ArchiveStage:
    """Source stage streaming a tar archive of a directory tree."""

    def __init__(self, source_dir: Path, excludes: Sequence[str] = ()):
        """
        Initialize the archive stage.

        Args:
            source_dir: Directory to archive (its contents, not the directory itself)
            excludes: Glob patterns passed to tar --exclude

        Raises:
            SourceMissingError: If source_dir is not a directory
        """
        self.source_dir = Path(source_dir)
        self.excludes = list(excludes)

        if not self.source_dir.is_dir():
            raise SourceMissingError(f"SOURCE_DIR does not exist: {self.source_dir}")

    def stage(self) -> Stage:
        argv = [ARCHIVE_TOOL, '--numeric-owner']
        argv.extend(f"--exclude={pattern}" for pattern in self.excludes)
        argv.extend(['-cf', '-', '-C', str(self.source_dir), '.'])
        return Stage(ARCHIVE_TOOL, argv)
