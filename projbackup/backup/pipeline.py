"""
Streaming pipelines of external byte-stream stages.

A pipeline is one source stage (produces bytes) followed by zero or more
transform stages (consume and produce bytes), e.g.:

    mysqldump ... | zstd ... | gpg ... > {destination}

Stages are connected with OS pipes so nothing is buffered in memory. Every
stage's exit status is checked, and output only appears at the destination
path once the whole chain has succeeded.
"""

import os
import shutil
import signal
import logging
import subprocess
import tempfile
from dataclasses import dataclass, field, replace as dc_replace
from pathlib import Path
from typing import IO, List, Optional, Sequence, Tuple, Union

from projbackup.config import BackupError


logger = logging.getLogger(__name__)

STDERR_TAIL_BYTES = 2000


class ToolMissingError(BackupError):
    """Raised when a required external program is not installed."""

    exit_code = 127

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Required tool not found: {tool}")


class PipelineError(BackupError):
    """Raised when any stage of a pipeline exits non-zero."""

    def __init__(self, stage_index: int, stage_name: str, returncode: int, stderr_tail: str = ''):
        self.stage_index = stage_index
        self.stage_name = stage_name
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        # Killed by a signal: report it the way a shell would
        self.exit_code = returncode if returncode > 0 else 128 - returncode
        super().__init__(
            f"Pipeline stage {stage_index} ({stage_name}) failed with exit status {returncode}"
        )


@dataclass(frozen=True)
class Stage:
    """One external command in a pipeline, as an argument list."""

    name: str
    argv: Tuple[str, ...]

    def __post_init__(self):
        if isinstance(self.argv, str):
            raise TypeError("Stage argv must be a sequence of arguments, not a string")
        if not self.argv:
            raise ValueError(f"Stage {self.name!r} has an empty command")
        object.__setattr__(self, 'argv', tuple(str(a) for a in self.argv))

    @property
    def tool(self) -> str:
        return self.argv[0]


@dataclass(frozen=True)
class PipelineSpec:
    """Exactly one source stage followed by ordered transforms."""

    source: Stage
    transforms: Tuple[Stage, ...] = ()

    def __post_init__(self):
        if not isinstance(self.source, Stage):
            raise TypeError("Pipeline source must be a Stage")
        object.__setattr__(self, 'transforms', tuple(self.transforms))

    def then(self, stage: Optional[Stage]) -> 'PipelineSpec':
        """Return a copy with ``stage`` appended (no-op for None)."""
        if stage is None:
            return self
        return dc_replace(self, transforms=self.transforms + (stage,))

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return (self.source,) + self.transforms

    def describe(self) -> str:
        return ' | '.join(stage.name for stage in self.stages)


@dataclass(frozen=True)
class Artifact:
    """A finished output file."""

    path: Path
    logical_name: str
    size_bytes: int
    checksum_manifest: Optional[Path] = field(default=None, compare=False)

    @classmethod
    def from_path(cls, path: Union[str, Path], logical_name: Optional[str] = None) -> 'Artifact':
        path = Path(path)
        return cls(path=path, logical_name=logical_name or path.name, size_bytes=path.stat().st_size)

    @property
    def name(self) -> str:
        return self.path.name

    def with_manifest(self, manifest: Path) -> 'Artifact':
        return dc_replace(self, checksum_manifest=manifest)


@dataclass(frozen=True)
class PriorityHints:
    """CPU and I/O scheduling advisories applied to every stage."""

    nice_level: int = 10
    ionice_class: int = 2
    ionice_priority: int = 7

    def wrap(self, argv: Sequence[str]) -> List[str]:
        prefix = []
        if shutil.which('ionice'):
            prefix += ['ionice', '-c', str(self.ionice_class), '-n', str(self.ionice_priority)]
        if shutil.which('nice'):
            prefix += ['nice', '-n', str(self.nice_level)]
        return prefix + list(argv)


def _remove_quietly(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")


def _read_tail(handle: IO[bytes]) -> str:
    handle.seek(0, os.SEEK_END)
    size = handle.tell()
    handle.seek(max(0, size - STDERR_TAIL_BYTES))
    return handle.read().decode('utf-8', errors='replace').strip()


class PipelineComposer:
    """
    Runs pipelines as a single failure-atomic unit.

    Output is written to ``{destination}.partial`` and renamed into place only
    after every stage exits 0. On any failure (including an exception or
    signal while waiting) all stages are killed and no file is left at the
    destination.
    """

    def __init__(self, priority: Optional[PriorityHints] = None):
        """
        Initialize the composer.

        Args:
            priority: Optional nice/ionice hints; missing tools are skipped
        """
        self.priority = priority
        if priority is not None:
            for tool in ('ionice', 'nice'):
                if not shutil.which(tool):
                    logger.warning(f"'{tool}' not available, running pipelines without it")

    def execute(self, spec: PipelineSpec, destination: Union[str, Path],
                logical_name: Optional[str] = None) -> Artifact:
        """
        Run a pipeline and write its output to ``destination``.

        Args:
            spec: Pipeline to run
            destination: Output file path
            logical_name: Artifact name (default: destination basename)

        Returns:
            Artifact describing the output file

        Raises:
            ToolMissingError: If any stage's program is not installed
            PipelineError: If any stage exits non-zero
        """
        destination = Path(destination)
        logger.info(f"Running pipeline: {spec.describe()} -> {destination}")

        self._run_chain(spec.stages, subprocess.DEVNULL, destination)
        return Artifact.from_path(destination, logical_name)

    def replace(self, artifact: Artifact, transforms: Sequence[Stage], suffix: str) -> Artifact:
        """
        Feed an existing artifact through transforms and replace it.

        The new file is ``{artifact.path}{suffix}``; the predecessor file is
        deleted once the new one is complete. On failure the predecessor is
        left untouched.

        Args:
            artifact: Artifact to transform
            transforms: Transform stages (at least one)
            suffix: Suffix appended to the artifact filename (e.g. '.gpg')

        Returns:
            The replacement Artifact (same logical name)
        """
        if not transforms:
            raise ValueError("replace() needs at least one transform stage")

        new_path = artifact.path.with_name(artifact.path.name + suffix)
        logger.info(
            f"Running pipeline: {' | '.join(s.name for s in transforms)} "
            f"< {artifact.path.name} -> {new_path.name}"
        )

        with open(artifact.path, 'rb') as source:
            self._run_chain(transforms, source, new_path)

        artifact.path.unlink()
        return Artifact.from_path(new_path, artifact.logical_name)

    def _argv(self, stage: Stage) -> List[str]:
        if self.priority is None:
            return list(stage.argv)
        return self.priority.wrap(stage.argv)

    def _run_chain(self, stages: Sequence[Stage], stdin, destination: Path):
        for stage in stages:
            if not shutil.which(stage.tool):
                raise ToolMissingError(stage.tool)

        partial = destination.with_name(destination.name + '.partial')
        procs = []
        stderr_files = []

        try:
            with open(partial, 'wb') as out:
                upstream = stdin
                for index, stage in enumerate(stages):
                    is_last = index == len(stages) - 1
                    stderr_file = tempfile.TemporaryFile()
                    stderr_files.append(stderr_file)

                    try:
                        proc = subprocess.Popen(
                            self._argv(stage),
                            stdin=upstream,
                            stdout=out if is_last else subprocess.PIPE,
                            stderr=stderr_file,
                        )
                    except FileNotFoundError:
                        raise ToolMissingError(stage.tool)

                    # Parent must not hold the pipe, or upstream never sees EPIPE
                    if procs:
                        procs[-1].stdout.close()
                    procs.append(proc)
                    upstream = proc.stdout

                returncodes = [proc.wait() for proc in procs]

            failed = self._first_failure(returncodes)
            if failed is not None:
                stage = stages[failed]
                tail = _read_tail(stderr_files[failed])
                if tail:
                    logger.error(f"{stage.name} stderr: {tail}")
                _remove_quietly(partial)
                _remove_quietly(destination)
                raise PipelineError(failed, stage.name, returncodes[failed], tail)

            os.replace(partial, destination)

        except BaseException:
            for proc in procs:
                if proc.poll() is None:
                    proc.kill()
            for proc in procs:
                proc.wait()
                if proc.stdout is not None:
                    proc.stdout.close()
            _remove_quietly(partial)
            raise

        finally:
            for stderr_file in stderr_files:
                stderr_file.close()

    @staticmethod
    def _first_failure(returncodes: Sequence[int]) -> Optional[int]:
        """
        Index of the stage to blame, or None if all stages succeeded.

        An upstream stage killed by SIGPIPE only died because a later stage
        stopped reading, so the later stage is reported instead.
        """
        failures = [i for i, rc in enumerate(returncodes) if rc != 0]
        if not failures:
            return None

        sigpipe = -getattr(signal, 'SIGPIPE', 13)
        for index in failures:
            if returncodes[index] != sigpipe:
                return index
        return failures[0]
