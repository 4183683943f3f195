"""Atomic file replacement and advisory locking for managed config files."""

import contextlib
import fcntl
import os
import re
import stat
import tempfile
from pathlib import Path
from typing import Iterator, Optional, Union

PathLike = Union[str, Path]

# Undecodable bytes survive a read/write cycle unchanged.
ENCODING = "utf-8"
ERRORS = "surrogateescape"


def read_text(path: PathLike) -> str:
    with open(path, "r", encoding=ENCODING, errors=ERRORS, newline="") as f:
        return f.read()


def atomic_write(path: PathLike, content: str, mode: Optional[int] = None) -> None:
    """
    Replace ``path`` with ``content`` via a temp file and rename.

    The temp file lives in the target directory so the final ``os.replace``
    stays on one filesystem. An existing file's permissions (and ownership,
    when running as root) carry over; new files get ``mode`` or 0o644.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        current = path.stat()
    except FileNotFoundError:
        current = None

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding=ENCODING, errors=ERRORS, newline="") as tmp:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        if current is not None:
            os.chmod(tmp_name, stat.S_IMODE(current.st_mode))
            if os.geteuid() == 0:
                os.chown(tmp_name, current.st_uid, current.st_gid)
        else:
            os.chmod(tmp_name, mode if mode is not None else 0o644)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def lock_path_for(target: PathLike, lock_dir: PathLike) -> Path:
    name = re.sub(r"[^A-Za-z0-9_.-]", "_", str(Path(target).absolute()).strip("/"))
    return Path(lock_dir) / f"{name}.lock"


@contextlib.contextmanager
def file_lock(target: PathLike, lock_dir: Optional[PathLike]) -> Iterator[None]:
    """
    Hold an exclusive advisory lock for ``target`` while the block runs.

    The lock lives in a separate file under ``lock_dir`` because the target
    itself is replaced by rename. With ``lock_dir=None`` no lock is taken.
    """
    if lock_dir is None:
        yield
        return
    lock_file = lock_path_for(target, lock_dir)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_file, "w") as handle:
        fcntl.flock(handle, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
