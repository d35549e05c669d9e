from __future__ import annotations

import logging
import os
from typing import Optional

from ..errors import BootloaderError
from ..gadget import Bootloader, Volume
from .command import CommandError
from .ops import SystemOps

logger = logging.getLogger(__name__)

# unpacked image/boot/<dir> and where it lands below the target directory;
# u-boot and piboot assets must sit at the root of the boot partition
SECURE_BOOT_DIRS = {
    Bootloader.UBOOT: ("uboot", ""),
    Bootloader.PIBOOT: ("piboot", ""),
    Bootloader.GRUB: ("grub", os.path.join("EFI", "ubuntu")),
}


class BootloaderStager:
    """Rearranges the unpacked image tree for the volume's bootloader."""

    def __init__(self, unpack_dir: str, *, ops: Optional[SystemOps] = None) -> None:
        self.unpack_dir = unpack_dir
        self.ops = ops or SystemOps()

    def handle_secure_boot(self, volume: Volume, target_dir: str) -> None:
        dirs = SECURE_BOOT_DIRS.get(volume.bootloader)
        if dirs is None:
            return
        boot_name, dest = dirs

        boot_dir = os.path.join(self.unpack_dir, "image", "boot", boot_name)
        if not os.path.isdir(boot_dir):
            logger.debug("No %s boot assets in %s", volume.bootloader.value, boot_dir)
            return

        files = self.ops.files
        dest_dir = os.path.join(target_dir, dest) if dest else target_dir
        try:
            files.makedirs(dest_dir, exist_ok=True)
        except OSError as e:
            raise BootloaderError(f"Error creating ubuntu dir: {e}") from e

        try:
            entries = files.listdir(boot_dir)
        except OSError as e:
            raise BootloaderError(f"Error reading boot dir: {e}") from e

        for entry in entries:
            try:
                files.rename(os.path.join(boot_dir, entry), os.path.join(dest_dir, entry))
            except OSError as e:
                raise BootloaderError(f"Error copying boot dir: {e}") from e
        logger.info("Moved %d %s boot files to %s", len(entries), volume.bootloader.value, dest_dir)

    def handle_lk_bootloader(self, volume: Volume) -> None:
        if volume.bootloader is not Bootloader.LK:
            return

        lk_dir = os.path.join(self.unpack_dir, "image", "boot", "lk")
        if not os.path.isdir(lk_dir):
            raise BootloaderError(f"Error reading lk bootloader dir: {lk_dir} does not exist")

        files = self.ops.files
        gadget_dir = os.path.join(self.unpack_dir, "gadget")
        try:
            files.mkdir(gadget_dir)
        except FileExistsError:
            pass
        except OSError as e:
            raise BootloaderError(f"Failed to create gadget dir: {e}") from e

        try:
            entries = files.listdir(lk_dir)
        except OSError as e:
            raise BootloaderError(f"Error reading lk bootloader dir: {e}") from e

        for entry in entries:
            try:
                files.copy_special(os.path.join(lk_dir, entry), gadget_dir)
            except (CommandError, OSError) as e:
                raise BootloaderError(f"Error copying lk bootloader dir: {e}") from e
        logger.info("Copied lk bootloader files into %s", gadget_dir)
