from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List

from .errors import BuildError, ValidationError
from .lib.command import CommandError
from .lib.fileutil import copy_tree
from .lib.host import (
    LIVE_BUILD_COMMANDS,
    apt_install_argv,
    create_ppa_info,
    get_host_arch,
    get_host_suite,
    live_build_env,
    parse_ppas,
)
from .state_machine import StateMachine

logger = logging.getLogger(__name__)


@dataclass
class ClassicOpts:
    gadget_tree: str = ""
    project: str = ""
    filesystem: str = ""
    suite: str = ""
    arch: str = ""
    subproject: str = ""
    subarch: str = ""
    extra_ppas: str = ""
    with_proposed: bool = False
    extra_packages: List[str] = field(default_factory=list)


class ClassicStateMachine(StateMachine):
    """Debian-based image from a gadget tree and a rootfs.

    The rootfs is either an unpacked filesystem (--filesystem) or built by
    livecd-rootfs for --project.
    """

    variant = "classic"
    step_names = (
        "make_temporary_directories",
        "prepare_gadget_tree",
        "build_rootfs",
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

    def __init__(self, opts: ClassicOpts, *args, **kwargs) -> None:
        self.opts = opts
        super().__init__(*args, **kwargs)

    def validate_input(self) -> None:
        super().validate_input()
        if not self.opts.gadget_tree:
            raise ValidationError("a gadget tree is required")
        if self.opts.project and self.opts.filesystem:
            raise ValidationError("project and filesystem are mutually exclusive")
        if not self.opts.project and not self.opts.filesystem:
            raise ValidationError("project or filesystem is required")

    def prepare_gadget_tree(self) -> None:
        try:
            copy_tree(self.opts.gadget_tree, self.gadget_dir)
        except OSError as e:
            raise BuildError(f"Error preparing gadget tree: {e}") from e

    def build_rootfs(self) -> None:
        chroot = self.temp_dirs.chroot
        if self.opts.filesystem:
            try:
                copy_tree(self.opts.filesystem, chroot)
            except OSError as e:
                raise BuildError(f"Error copying filesystem: {e}") from e
            self.write_ppa_sources(chroot)
            self.install_extra_packages(chroot)
            return

        livecd = os.path.join(self.temp_dirs.scratch, "livecd")
        env = live_build_env(
            project=self.opts.project,
            suite=self.opts.suite or get_host_suite(),
            arch=self.opts.arch or get_host_arch(),
            subproject=self.opts.subproject,
            subarch=self.opts.subarch,
            extra_ppas=self.opts.extra_ppas,
            with_proposed=self.opts.with_proposed,
        )
        try:
            os.makedirs(livecd, exist_ok=True)
            for argv in LIVE_BUILD_COMMANDS:
                self.ops.run(list(argv), env=env, cwd=livecd)
        except (CommandError, OSError) as e:
            raise BuildError(f"Error running live-build: {e}") from e

        try:
            copy_tree(os.path.join(livecd, "chroot"), chroot)
        except OSError as e:
            raise BuildError(f"Error copying live-build chroot: {e}") from e

    def write_ppa_sources(self, root: str) -> None:
        if not self.opts.extra_ppas:
            return
        series = self.opts.suite or get_host_suite()
        sources = os.path.join(root, "etc", "apt", "sources.list.d")
        try:
            os.makedirs(sources, exist_ok=True)
            for ppa in parse_ppas(self.opts.extra_ppas):
                name, contents = create_ppa_info(ppa, series)
                with open(os.path.join(sources, name), "w", encoding="utf-8") as f:
                    f.write(contents + "\n")
                logger.info("Added PPA %s (%s)", ppa, name)
        except OSError as e:
            raise BuildError(f"Error writing PPA sources: {e}") from e

    def install_extra_packages(self, root: str) -> None:
        if not self.opts.extra_packages:
            return
        try:
            self.ops.run(apt_install_argv(root, self.opts.extra_packages))
        except (CommandError, OSError) as e:
            raise BuildError(f"Error installing extra packages: {e}") from e

    def populate_rootfs_contents(self) -> None:
        try:
            copy_tree(self.temp_dirs.chroot, self.temp_dirs.rootfs)
        except OSError as e:
            raise BuildError(f"Error copying chroot into rootfs: {e}") from e
        self.write_cloud_init(self.temp_dirs.rootfs)
