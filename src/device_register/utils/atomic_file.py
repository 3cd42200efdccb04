"""
Crash-safe file replacement.
"""

import os
import tempfile
from pathlib import Path
from typing import Union


def atomic_write_text(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """
    Replace ``path`` with ``content`` so readers see the old or the new file, never half of one.

    The data is written to a temp file beside the target, fsynced, renamed over
    the target, and the directory is fsynced so the rename survives power loss.

    Raises:
        OSError: if any step fails. The temp file is removed in that case.
    """
    path = Path(path)
    directory = path.parent
    directory.mkdir(parents=True, exist_ok=True)

    # Created 0600 by mkstemp, so secrets are never briefly world-readable
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file_handle:
            file_handle.write(content)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    fsync_directory(directory)


def fsync_directory(directory: Union[str, Path]) -> None:
    """Sync a directory entry; a no-op on Windows."""
    if os.name == "nt":
        return
    dir_fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)
