"""
Size-bounded splitting of artifacts for transport.

Parts are named ``{basename}.partNNN`` with a zero-padded index starting at
000, so ``cat {basename}.part* > {basename}`` restores the original.
"""

import logging
from pathlib import Path
from typing import List

from .pipeline import Artifact


logger = logging.getLogger(__name__)

MIB = 1024 * 1024
COPY_BUFFER = MIB
MIN_SUFFIX_WIDTH = 3


def part_count(size_bytes: int, part_bytes: int) -> int:
    return max(1, -(-size_bytes // part_bytes))


def suffix_width(count: int) -> int:
    """Digits needed for indices 0..count-1 (at least 3)."""
    return max(MIN_SUFFIX_WIDTH, len(str(count - 1)))


def part_path(path: Path, index: int, width: int) -> Path:
    return path.with_name(f"{path.name}.part{index:0{width}d}")


def split_if_oversize(artifact: Artifact, max_part_mb: int) -> List[Artifact]:
    """
    Split an artifact into parts of at most ``max_part_mb`` MiB.

    Args:
        artifact: Artifact to split
        max_part_mb: Maximum part size in MiB

    Returns:
        ``[artifact]`` when it already fits, otherwise the parts in
        ascending order (the original file is deleted)

    Raises:
        ValueError: If max_part_mb is not positive
        OSError: If the parts cannot be written (original is kept)
    """
    if max_part_mb <= 0:
        raise ValueError(f"max_part_mb must be positive, got {max_part_mb}")

    part_bytes = int(max_part_mb * MIB)
    size = artifact.path.stat().st_size
    if size <= part_bytes:
        return [artifact]

    count = part_count(size, part_bytes)
    width = suffix_width(count)
    logger.info(
        f"Splitting {artifact.name} {size // MIB}MB to <= {max_part_mb}MB parts ({count} parts)"
    )

    written = []
    try:
        with open(artifact.path, 'rb') as src:
            for index in range(count):
                path = part_path(artifact.path, index, width)
                remaining = part_bytes
                with open(path, 'wb') as dst:
                    written.append(path)
                    while remaining > 0:
                        chunk = src.read(min(COPY_BUFFER, remaining))
                        if not chunk:
                            break
                        dst.write(chunk)
                        remaining -= len(chunk)
    except BaseException:
        for path in written:
            path.unlink(missing_ok=True)
        raise

    artifact.path.unlink()

    return [
        Artifact.from_path(path, f"{artifact.logical_name} (part {index + 1})")
        for index, path in enumerate(written)
    ]
