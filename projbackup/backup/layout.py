"""
On-disk layout for a single backup run.

Layout (read by restore tooling, do not change):
    {backup_dir}/{project}/{timestamp}/project/{project}-project-{timestamp}.tar[.zst|.xz][.gpg]
    {backup_dir}/{project}/{timestamp}/db/{project}-db-{timestamp}.sql[.zst|.xz][.gpg]
    {backup_dir}/{project}/{timestamp}/backup-{timestamp}.log
"""

import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from projbackup.config import BackupError


TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'


class LayoutError(BackupError, OSError):
    """Raised when run directories cannot be created or written."""
    pass


class RunCollisionError(LayoutError):
    """Raised when a run directory for the same project and second already exists."""
    pass


def make_timestamp(now: Optional[datetime] = None) -> str:
    """Format a run timestamp (second resolution, local time)."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class RunContext:
    """Paths and identity of one backup run."""

    project_name: str
    timestamp: str
    project_root: Path
    run_dir: Path
    project_dir: Path
    db_dir: Path
    log_path: Path

    @classmethod
    def plan(cls, backup_dir, project_name: str, timestamp: str) -> 'RunContext':
        """
        Compute run paths without touching the filesystem.

        Same arguments always give the same paths.
        """
        project_root = Path(backup_dir) / project_name
        run_dir = project_root / timestamp

        return cls(
            project_name=project_name,
            timestamp=timestamp,
            project_root=project_root,
            run_dir=run_dir,
            project_dir=run_dir / 'project',
            db_dir=run_dir / 'db',
            log_path=run_dir / f"backup-{timestamp}.log",
        )

    @classmethod
    def create(cls, backup_dir, project_name: str, timestamp: str) -> 'RunContext':
        """
        Create the directory tree for a new run.

        Args:
            backup_dir: Destination root (BACKUP_DIR)
            project_name: Project identity (PROJECT_NAME)
            timestamp: Run timestamp, see make_timestamp()

        Returns:
            RunContext whose directories exist and are writable

        Raises:
            RunCollisionError: If this run directory already exists
            LayoutError: If directories cannot be created or written
        """
        run = cls.plan(backup_dir, project_name, timestamp)

        try:
            run.project_root.mkdir(parents=True, exist_ok=True)
            run.run_dir.mkdir()
        except FileExistsError:
            raise RunCollisionError(
                f"Run directory already exists: {run.run_dir} "
                f"(another run of {project_name} started in the same second)"
            )
        except OSError as e:
            raise LayoutError(f"Failed to create run directory {run.run_dir}: {e}")

        try:
            run.project_dir.mkdir()
            run.db_dir.mkdir()
        except OSError as e:
            raise LayoutError(f"Failed to create run subdirectories in {run.run_dir}: {e}")

        for directory in (run.run_dir, run.project_dir, run.db_dir):
            if not os.access(directory, os.W_OK | os.X_OK):
                raise LayoutError(f"Directory is not writable: {directory}")

        return run

    def project_archive_path(self, compressor_ext: Optional[str] = None) -> Path:
        """Path of the (unencrypted) project archive."""
        name = f"{self.project_name}-project-{self.timestamp}.tar"
        if compressor_ext:
            name += f".{compressor_ext}"
        return self.project_dir / name

    def db_dump_path(self, compressor_ext: Optional[str] = None, encrypted: bool = False) -> Path:
        """Path of the final database artifact."""
        name = f"{self.project_name}-db-{self.timestamp}.sql"
        if compressor_ext:
            name += f".{compressor_ext}"
        if encrypted:
            name += '.gpg'
        return self.db_dir / name

    @property
    def db_manifest_path(self) -> Path:
        return self.db_dir / f"db-{self.timestamp}.sha256"

    @property
    def credentials_path(self) -> Path:
        return self.run_dir / '.my.cnf'
