from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from typing import Callable

from . import fileutil
from .command import run_cmd

# Capabilities handed to the layout, writer, stager and hook code. Production
# code uses the defaults; tests swap single callables to inject failures.

RandomSource = Callable[[int], bytes]


@dataclass
class FileOps:
    mkdir: Callable[..., None] = os.mkdir
    makedirs: Callable[..., None] = os.makedirs
    listdir: Callable[[str], list] = fileutil.list_dir
    rename: Callable[[str, str], None] = os.rename
    copy_special: Callable[[str, str], None] = fileutil.copy_special_file
    rmtree: Callable[[str], None] = shutil.rmtree
    zero_fill: Callable[[str, int], None] = fileutil.zero_fill
    copy_blob: Callable[..., int] = fileutil.copy_blob
    open_file: Callable[..., object] = open


@dataclass
class SystemOps:
    files: FileOps = field(default_factory=FileOps)
    random: RandomSource = os.urandom
    run: Callable[..., object] = run_cmd
