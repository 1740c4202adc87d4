"""
Archive builder: packs the backup sources into a single compressed tar file.
"""
from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from volume_backup.errors import ArchiveError, ConfigurationError
from volume_backup.utils import format_bytes, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ArchiveResult:
    path: Path
    size_compressed: int
    size_uncompressed: int
    elapsed: float


def render_filename(template, when):
    """Substitute the run's start time into the strftime placeholders of ``template``."""
    name = when.strftime(template)
    if not name or '/' in name or name in ('.', '..'):
        raise ConfigurationError(f"File name template '{template}' does not produce a plain file name")
    return name


def compression_flags(filename):
    """Pick tar compression options from the archive's file name."""
    lower = filename.lower()
    if lower.endswith('.tar.zst'):
        return ['--use-compress-program=zstd']
    if lower.endswith('.tar'):
        return []
    # .tar.gz, .tgz and anything else
    return ['-z']


def _tree_size(path):
    """Total size in bytes of the regular files under path (symlinks not followed)."""
    if path.is_file():
        return path.stat().st_size
    total = 0
    for root, _dirs, files in os.walk(path):
        for f in files:
            try:
                st = os.lstat(os.path.join(root, f))
            except OSError:
                continue
            total += st.st_size
    return total


def resolve_sources(sources, archive_root='/'):
    """Return [(absolute path, path relative to archive_root)] for existing sources.

    Missing sources are skipped; at least one has to exist.
    """
    root = os.path.abspath(archive_root)
    resolved = []
    for source in sources:
        path = Path(os.path.abspath(source))
        if not path.exists():
            logger.warning("[Archive] Source %s does not exist, skipping", source)
            continue
        if not os.access(path, os.R_OK):
            raise ArchiveError(f"Source {source} is not readable")
        rel = os.path.relpath(path, root)
        if rel == '..' or rel.startswith('..' + os.sep):
            raise ArchiveError(f"Source {source} is outside the archive root {root}")
        resolved.append((path, rel))

    if not resolved:
        raise ConfigurationError(f"None of the configured sources exist: {', '.join(map(str, sources))}")
    return resolved


def build_archive(sources, destination, archive_root='/'):
    """Create ``destination`` containing every existing source.

    Paths inside the archive are relative to ``archive_root`` and sorted by
    name, so identical inputs produce an identical layout.
    """
    start = time.monotonic()
    destination = Path(destination)
    resolved = resolve_sources(sources, archive_root)

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArchiveError(f"Cannot create directory for {destination}: {e}")

    cmd_parts = ['tar', '--sort=name']
    cmd_parts.extend(compression_flags(destination.name))
    cmd_parts.extend(['-cf', str(destination), '-C', os.path.abspath(archive_root), '--'])
    cmd_parts.extend(rel for _path, rel in resolved)

    logger.info("[Archive] Creating %s from %s", destination, ', '.join(str(p) for p, _rel in resolved))
    logger.debug("[Archive] Command: %s", ' '.join(cmd_parts))

    try:
        result = subprocess.run(cmd_parts, capture_output=True, text=True)
    except OSError as e:
        raise ArchiveError(f"Could not run tar: {e}")

    if result.returncode == 1:
        # GNU tar: a file changed while being read; the archive is still usable
        logger.warning("[Archive] Some files changed while archiving: %s", result.stderr.strip())
    elif result.returncode != 0:
        try:
            destination.unlink()
        except FileNotFoundError:
            pass
        raise ArchiveError(f"tar exited with code {result.returncode}: {result.stderr.strip()}")

    try:
        size_compressed = destination.stat().st_size
    except OSError as e:
        raise ArchiveError(f"Archive {destination} was not created: {e}")

    size_uncompressed = sum(_tree_size(path) for path, _rel in resolved)
    elapsed = time.monotonic() - start

    logger.info("[Archive] Archive created in %.1fs: %s (%s uncompressed)",
                elapsed, format_bytes(size_compressed), format_bytes(size_uncompressed))
    return ArchiveResult(
        path=destination,
        size_compressed=size_compressed,
        size_uncompressed=size_uncompressed,
        elapsed=elapsed,
    )
