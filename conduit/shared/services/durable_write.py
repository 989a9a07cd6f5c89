"""Crash-safe file writes for bundles and extracted data directories."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path


def _sync_directory(directory: Path) -> None:
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(str(directory), flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Not every filesystem can fsync a directory.
        pass
    finally:
        os.close(fd)


def _stage(path: Path, content: bytes, mode: int) -> Path:
    """Write ``content`` to a synced temp file next to ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".part", dir=str(path.parent))
    staged = Path(name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(staged, mode)
    except BaseException:
        staged.unlink(missing_ok=True)
        raise
    return staged


def atomic_write_bytes(path: Path, content: bytes, *, mode: int = 0o644) -> None:
    """Replace ``path`` with ``content`` in one rename."""
    staged = _stage(path, content, mode)
    try:
        os.replace(staged, path)
    finally:
        staged.unlink(missing_ok=True)
    _sync_directory(path.parent)


def atomic_write_many(files: dict[Path, bytes], *, mode: int = 0o644) -> None:
    """Write several files, staging all of them before the first rename.

    A failure while staging leaves every destination untouched.
    """
    staged: dict[Path, Path] = {}
    try:
        for path, content in files.items():
            staged[path] = _stage(path, content, mode)
        for path, tmp in staged.items():
            os.replace(tmp, path)
    finally:
        for tmp in staged.values():
            tmp.unlink(missing_ok=True)
    for directory in {path.parent for path in files}:
        _sync_directory(directory)
