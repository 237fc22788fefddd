"""SHA-256 manifests in ``sha256sum`` format."""

import hashlib
from pathlib import Path
from typing import Iterable

CHUNK_SIZE = 1024 * 1024


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def write_manifest(manifest_path: Path, files: Iterable[Path]) -> Path:
    """
    Write a manifest with one ``<hex>  <basename>`` line per file.

    Args:
        manifest_path: Output manifest path
        files: Finished artifact files to hash

    Returns:
        manifest_path
    """
    lines = [f"{sha256_file(Path(p))}  {Path(p).name}\n" for p in files]

    tmp_path = manifest_path.with_name(manifest_path.name + '.partial')
    with open(tmp_path, 'w') as f:
        f.writelines(lines)
    tmp_path.replace(manifest_path)

    return manifest_path

