from __future__ import annotations

import logging
import os
from typing import List, Optional, Sequence

from ..errors import HookError
from .command import CommandError
from .ops import SystemOps

logger = logging.getLogger(__name__)

HOOK_POST_POPULATE_ROOTFS = "post-populate-rootfs"
HOOK_ROOTFS_ENV = "UBUNTU_IMAGE_HOOK_ROOTFS"


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def run_hooks(
    hooks_directories: Sequence[str],
    hook_name: str,
    env_key: str,
    env_value: str,
    *,
    ops: Optional[SystemOps] = None,
) -> List[str]:
    """Run the scripts for hook_name from every hooks directory.

    Per directory, executables in <dir>/<hook_name>.d run in sorted order,
    then <dir>/<hook_name> itself. Returns the scripts that ran.
    """

    ops = ops or SystemOps()
    ran: List[str] = []

    for hooks_dir in hooks_directories:
        scripts: List[str] = []
        hook_dir = os.path.join(hooks_dir, f"{hook_name}.d")
        if os.path.isdir(hook_dir):
            try:
                entries = ops.files.listdir(hook_dir)
            except OSError as e:
                raise HookError(f"Error reading hooks directory: {e}") from e
            scripts.extend(os.path.join(hook_dir, e) for e in entries)
        scripts.append(os.path.join(hooks_dir, hook_name))

        for script in scripts:
            if not _is_executable(script):
                continue
            logger.info("Running hook %s", script)
            try:
                ops.run([script], env={env_key: env_value})
            except (CommandError, OSError) as e:
                raise HookError(f"Error running hook {script}: {e}") from e
            ran.append(script)

    return ran
