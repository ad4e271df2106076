"""Local storage hardening helpers: private paths, atomic writes, file locks."""

from __future__ import annotations

import fcntl
import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


_SAFE_ID_RE = re.compile(r"[^a-zA-Z0-9._-]")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def safe_child_path(base_dir: Path, identifier: str, suffix: str) -> Path:
    """Build a child path under base_dir from an untrusted identifier."""
    safe_name = _SAFE_ID_RE.sub("_", identifier)
    path = (base_dir / f"{safe_name}{suffix}").resolve()
    if path.parent != base_dir.resolve():
        raise ValueError(f"Unsafe path for identifier: {identifier}")
    return path


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write via a temp file + rename so readers never see partial content."""
    tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    ensure_private_file(path)


@contextmanager
def exclusive_lock(lock_path: Path) -> Iterator[None]:
    ensure_private_file(lock_path)
    with open(lock_path, "r+") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
