from __future__ import annotations

import logging
import os
from typing import Callable, List

from ..gadget import Filesystem
from .command import run_cmd

logger = logging.getLogger(__name__)


def _mkfs_argv(fs: Filesystem, label: str, sector_size: int) -> List[str]:
    if fs is Filesystem.EXT4:
        argv = ["mkfs.ext4", "-F", "-q"]
        if label:
            argv += ["-L", label]
        return argv
    if fs is Filesystem.VFAT:
        argv = ["mkfs.vfat", "-S", str(sector_size), "-s", "1"]
        if label:
            argv += ["-n", label[:11].upper()]
        return argv
    raise ValueError(f"unsupported filesystem: {fs.value}")


class MkfsRunner:
    """Builds mkfs command lines for a partition image file.

    The image file must already exist at its final size.
    """

    def __init__(self, run: Callable[..., object] = run_cmd) -> None:
        self.run = run

    def make(self, fs: Filesystem, image: str, label: str = "", *, sector_size: int = 512) -> None:
        argv = _mkfs_argv(fs, label, sector_size)
        self.run([*argv, image])

    def make_with_content(
        self,
        fs: Filesystem,
        image: str,
        label: str,
        content_root: str,
        *,
        sector_size: int = 512,
    ) -> None:
        if not content_root or not os.path.isdir(content_root):
            raise FileNotFoundError(f"content directory {content_root!r} does not exist")

        argv = _mkfs_argv(fs, label, sector_size)
        if fs is Filesystem.EXT4:
            # mke2fs populates the filesystem itself
            self.run([*argv, "-d", content_root, image])
            return

        self.run([*argv, image])
        entries = sorted(os.listdir(content_root))
        if entries:
            self.run(["mcopy", "-s", "-i", image, *[os.path.join(content_root, e) for e in entries], "::"])
        else:
            logger.debug("No content to copy into %s", image)

