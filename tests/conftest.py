"""
Pytest configuration and shared fixtures for the image builder tests.

No test runs real mkfs, sfdisk, snap or live-build: state machines and
writers get a SystemOps whose process runner only records the calls.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from ubuntu_image_builder.gadget import (
    Bootloader,
    Filesystem,
    Role,
    Structure,
    Volume,
    VolumeContent,
)
from ubuntu_image_builder.lib.command import CmdResult, CommandError
from ubuntu_image_builder.lib.ops import SystemOps

GADGET_YAML = """\
volumes:
  pc:
    schema: mbr
    bootloader: grub
    structure:
      - name: mbr
        type: mbr
        role: mbr
        size: 440
        content:
          - image: pc-boot.img
      - name: writable
        type: "83"
        role: system-data
        filesystem: vfat
        filesystem-label: writable
        offset: 1M
        size: 8M
"""


class FakeRunner:
    """Stands in for run_cmd; records argv and keyword arguments."""

    def __init__(self, fail_on: Optional[str] = None) -> None:
        self.calls: List[Tuple[List[str], Dict[str, Any]]] = []
        self.fail_on = fail_on

    def __call__(self, argv, **kwargs) -> CmdResult:
        argv = list(argv)
        self.calls.append((argv, kwargs))
        if self.fail_on and argv[0] == self.fail_on:
            raise CommandError(argv, 1, "simulated failure")
        return CmdResult(argv=argv, returncode=0, stdout="", stderr="")

    @property
    def programs(self) -> List[str]:
        return [argv[0] for argv, _ in self.calls]


@pytest.fixture
def fake_run() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def ops(fake_run: FakeRunner) -> SystemOps:
    return SystemOps(run=fake_run)


@pytest.fixture
def gadget_tree(tmp_path: Path) -> Path:
    """A classic gadget tree: MBR blob plus one vfat system-data structure."""

    tree = tmp_path / "gadget-tree"
    (tree / "meta").mkdir(parents=True)
    (tree / "meta" / "gadget.yaml").write_text(GADGET_YAML, encoding="utf-8")
    (tree / "pc-boot.img").write_bytes(bytes(range(256)) + b"\xab" * 184)
    return tree


@pytest.fixture
def rootfs_tree(tmp_path: Path) -> Path:
    fs = tmp_path / "filesystem"
    (fs / "etc").mkdir(parents=True)
    (fs / "etc" / "hostname").write_text("ubuntu\n", encoding="utf-8")
    (fs / "usr" / "bin").mkdir(parents=True)
    (fs / "usr" / "bin" / "tool").write_bytes(b"\x7fELF" + b"\0" * 4092)
    return fs


@pytest.fixture
def pc_volume() -> Volume:
    return Volume(
        name="pc",
        schema="mbr",
        bootloader=Bootloader.GRUB,
        structures=[
            Structure(
                name="mbr",
                type="mbr",
                role=Role.MBR,
                size=440,
                content=[VolumeContent(image="pc-boot.img")],
            ),
            Structure(
                name="EFI System",
                type="0C",
                role=Role.SYSTEM_BOOT,
                filesystem=Filesystem.VFAT,
                label="system-boot",
                offset=1024 * 1024,
                size=4 * 1024 * 1024,
                content=[VolumeContent(source="grubx64.efi", target="EFI/boot/")],
            ),
            Structure(
                name="writable",
                type="83",
                role=Role.SYSTEM_DATA,
                filesystem=Filesystem.EXT4,
                label="writable",
                size=16 * 1024 * 1024,
            ),
        ],
    )
