from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, Optional

from .command import run_cmd

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 1024 * 1024


def copy_tree(src: str, dst: str, *, exclude: Iterable[str] = ()) -> None:
    """Copy the contents of src into dst, keeping symlinks as symlinks.

    Top-level entries named in exclude are skipped.
    """

    s = Path(src)
    d = Path(dst)
    if not s.exists():
        raise FileNotFoundError(src)

    skip = set(exclude)
    d.mkdir(parents=True, exist_ok=True)
    for item in sorted(s.iterdir()):
        if item.name in skip:
            continue
        out = d / item.name
        if item.is_dir() and not item.is_symlink():
            shutil.copytree(item, out, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(item, out, follow_symlinks=False)


def copy_path(src: str, dst: str) -> None:
    """Copy a gadget content entry.

    A source ending in "/" copies the directory contents into dst, any other
    directory is copied as dst itself, and a file lands at dst.
    """

    if src.endswith("/"):
        copy_tree(src, dst)
        return

    d = Path(dst)
    d.parent.mkdir(parents=True, exist_ok=True)
    if os.path.isdir(src):
        shutil.copytree(src, d, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(src, d, follow_symlinks=False)


def copy_special_file(src: str, dst_dir: str) -> None:
    # cp -a keeps device nodes, fifos and ownership intact
    run_cmd(["cp", "-a", src, dst_dir])


def list_dir(path: str) -> list[str]:
    return sorted(os.listdir(path))


def zero_fill(path: str, size: int) -> None:
    """Create (or truncate) path as a sparse file of size zero bytes."""

    if size < 0:
        raise ValueError(f"invalid size {size}")
    with open(path, "wb") as f:
        f.truncate(size)


def copy_blob(
    src: str,
    dst: str,
    *,
    seek: int = 0,
    block_size: int = DEFAULT_BLOCK_SIZE,
    count: Optional[int] = None,
) -> int:
    """Copy src into dst at byte offset seek without truncating dst.

    count limits the copy to that many bytes. Returns the number of bytes
    written.
    """

    if block_size <= 0:
        raise ValueError(f"invalid block size {block_size}")

    written = 0
    mode = "r+b" if os.path.exists(dst) else "w+b"
    with open(src, "rb") as fin, open(dst, mode) as fout:
        fout.seek(seek)
        while count is None or written < count:
            want = block_size if count is None else min(block_size, count - written)
            chunk = fin.read(want)
            if not chunk:
                break
            fout.write(chunk)
            written += len(chunk)
    return written
