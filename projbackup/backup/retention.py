"""
Retention policy enforcement for run directories.

Removes run directories directly below a project's root whose modification
time is older than RETAIN_DAYS. The active run directory is never removed.
"""

import time
import shutil
import logging
from pathlib import Path
from typing import List, Optional


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class RetentionSweeper:
    """
    Deletes old run directories of one project.

    Only immediate children of ``project_root`` are considered; nothing is
    followed into other projects or deeper levels.
    """

    def __init__(self, project_root: Path):
        """
        Initialize retention sweeper.

        Args:
            project_root: {BACKUP_DIR}/{PROJECT_NAME}
        """
        self.project_root = Path(project_root)

    def expired(self, max_age_days: int, active_run_dir: Optional[Path] = None) -> List[Path]:
        """
        List run directories older than ``max_age_days``.

        Args:
            max_age_days: Maximum age in days
            active_run_dir: Directory of the current run, always kept

        Returns:
            Expired directories, oldest first
        """
        if not self.project_root.is_dir():
            return []

        active = Path(active_run_dir).resolve() if active_run_dir else None
        cutoff = time.time() - max_age_days * SECONDS_PER_DAY

        try:
            children = list(self.project_root.iterdir())
        except OSError as e:
            logger.warning(f"Retention: cannot list {self.project_root}: {e}")
            return []

        candidates = []
        for child in children:
            try:
                if child.is_symlink() or not child.is_dir():
                    continue
                if active is not None and child.resolve() == active:
                    continue
                mtime = child.stat().st_mtime
            except OSError as e:
                logger.warning(f"Retention: cannot inspect {child}: {e}")
                continue

            if mtime < cutoff:
                candidates.append((mtime, child))

        return [path for _, path in sorted(candidates)]

    def sweep(self, max_age_days: int, active_run_dir: Optional[Path] = None) -> List[Path]:
        """
        Remove expired run directories.

        Args:
            max_age_days: Maximum age in days (RETAIN_DAYS)
            active_run_dir: Directory of the current run, always kept

        Returns:
            Directories that were removed
        """
        logger.info(
            f"Retention: removing run-folders under {self.project_root} "
            f"older than {max_age_days} days"
        )

        removed = []
        for path in self.expired(max_age_days, active_run_dir):
            try:
                shutil.rmtree(path)
                removed.append(path)
                logger.info(f"Retention: removed {path}")
            except OSError as e:
                logger.warning(f"Retention: failed to remove {path}: {e}")

        logger.info(f"Retention: {len(removed)} run-folder(s) removed")
        return removed
