"""
Compression and encryption transform stages.

Supported compressors:
- zstd: multithreaded, level 19, long-distance matching (.zst)
- xz: multithreaded, level 9e (.xz)
- none: compression disabled

Encryption uses gpg public-key encryption for a single recipient (.gpg).
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from projbackup.config import BackupConfig
from .pipeline import Stage


@dataclass(frozen=True)
class Compressor:
    """A streaming compressor reading stdin and writing stdout."""

    name: str
    argv: Tuple[str, ...]
    extension: str

    def stage(self) -> Stage:
        return Stage(self.name, self.argv)


COMPRESSORS = {
    'zstd': Compressor('zstd', ('zstd', '-q', '-c', '-T0', '-19', '--long=31'), 'zst'),
    'xz': Compressor('xz', ('xz', '-T0', '-9e', '-c'), 'xz'),
}

ENCRYPTED_SUFFIX = '.gpg'


def get_compressor(name: Optional[str]) -> Optional[Compressor]:
    """
    Look up a compressor by name.

    Args:
        name: 'zstd', 'xz', or empty/None for no compression

    Returns:
        Compressor, or None when compression is disabled

    Raises:
        ValueError: If name is not a supported compressor
    """
    if not name:
        return None

    if name not in COMPRESSORS:
        raise ValueError(
            f"Invalid compressor: {name}. "
            f"Valid options: {list(COMPRESSORS.keys())}"
        )

    return COMPRESSORS[name]


def compressor_extension(name: Optional[str]) -> Optional[str]:
    compressor = get_compressor(name)
    return compressor.extension if compressor else None


def encryption_stage(recipient: str) -> Stage:
    """gpg stage encrypting stdin to stdout for ``recipient``."""
    if not recipient:
        raise ValueError("A gpg recipient is required for encryption")

    return Stage('gpg', (
        'gpg', '--yes', '--batch', '--trust-model', 'always',
        '--recipient', recipient, '--output', '-', '--encrypt',
    ))


def build_transforms(config: BackupConfig, encrypt: bool = True) -> List[Stage]:
    """
    Transform stages for a pipeline, in order: compress, then encrypt.

    Args:
        config: Run configuration
        encrypt: Include the gpg stage when ENABLE_GPG is set

    Returns:
        List of transform stages (possibly empty)
    """
    transforms = []

    compressor = get_compressor(config.compressor)
    if compressor:
        transforms.append(compressor.stage())

    if encrypt and config.enable_gpg:
        transforms.append(encryption_stage(config.gpg_recipient))

    return transforms
