from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List

from .errors import BuildError, ValidationError
from .lib.command import CommandError
from .lib.fileutil import copy_tree
from .state_machine import StateMachine

logger = logging.getLogger(__name__)

CONSOLE_CONF_COMPLETE = "var/lib/console-conf/complete"


@dataclass
class SnapOpts:
    model_assertion: str = ""
    snaps: List[str] = field(default_factory=list)
    channel: str = ""
    disable_console_conf: bool = False


class SnapStateMachine(StateMachine):
    """Ubuntu Core image built from a model assertion by snap prepare-image."""

    variant = "snap"
    step_names = (
        "make_temporary_directories",
        "prepare_image",
        "load_gadget_yaml",
        "populate_rootfs_contents",
        "populate_rootfs_contents_hooks",
        "generate_disk_info",
        "calculate_rootfs_size",
        "resolve_layout",
        "populate_bootfs_contents",
        "populate_prepare_partitions",
        "make_disk",
        "finish",
    )

    def __init__(self, opts: SnapOpts, *args, **kwargs) -> None:
        self.opts = opts
        super().__init__(*args, **kwargs)

    def validate_input(self) -> None:
        super().validate_input()
        if not self.opts.model_assertion:
            raise ValidationError("a model assertion is required")

    def prepare_image_argv(self) -> List[str]:
        argv = ["snap", "prepare-image"]
        if self.opts.channel:
            argv += ["--channel", self.opts.channel]
        for snap in self.opts.snaps:
            argv += ["--snap", snap]
        return [*argv, self.opts.model_assertion, self.temp_dirs.unpack]

    def prepare_image(self) -> None:
        try:
            self.ops.run(self.prepare_image_argv())
        except (CommandError, OSError) as e:
            raise BuildError(f"Error running snap prepare-image: {e}") from e

    def load_gadget_yaml(self) -> None:
        super().load_gadget_yaml()
        for volume in self.gadget_info.volumes.values():
            self.stager.handle_lk_bootloader(volume)

    def populate_rootfs_contents(self) -> None:
        unpack = self.temp_dirs.unpack
        rootfs = self.temp_dirs.rootfs

        if self.is_seeded:
            src, dst, exclude = os.path.join(unpack, "system-seed"), rootfs, ()
        else:
            src, dst, exclude = os.path.join(unpack, "image"), os.path.join(rootfs, "system-data"), ("boot",)
        try:
            copy_tree(src, dst, exclude=exclude)
        except OSError as e:
            raise BuildError(f"Error copying {src} into rootfs: {e}") from e

        if self.is_seeded:
            return

        cloud_dir = os.path.join(dst, "etc", "cloud")
        if os.path.isdir(cloud_dir) and not os.listdir(cloud_dir):
            os.rmdir(cloud_dir)
        self.write_cloud_init(dst)

        if self.opts.disable_console_conf:
            marker = os.path.join(dst, CONSOLE_CONF_COMPLETE)
            try:
                os.makedirs(os.path.dirname(marker), exist_ok=True)
                with open(marker, "w", encoding="utf-8") as f:
                    f.write("console-conf has been disabled by ubuntu-image\n")
            except OSError as e:
                raise BuildError(f"Error disabling console-conf: {e}") from e
