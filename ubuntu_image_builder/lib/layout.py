from __future__ import annotations

import logging
import math
import os
from typing import List, Optional

from ..errors import DiskIDError, LayoutError
from ..gadget import GadgetInfo, OffsetWrite, Role, Structure, Volume
from .ops import RandomSource

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512
GPT_BACKUP_SECTORS = 33
DISK_ID_SIZE = 4
MAX_DISK_ID_ATTEMPTS = 64
ROOTFS_PADDING = 8 * 1024 * 1024

_IEC_UNITS = ("B", "KiB", "MiB", "GiB", "TiB")


def iec_size(n: int) -> str:
    value = float(n)
    unit = 0
    while value >= 1024 and unit < len(_IEC_UNITS) - 1:
        value /= 1024
        unit += 1
    if unit == 0 or value.is_integer():
        return f"{int(value)} {_IEC_UNITS[unit]}"
    return f"{value:.2f} {_IEC_UNITS[unit]}"


def max_offset(a: int, b: int) -> int:
    return a if a > b else b


def get_structure_offset(structure: Structure) -> int:
    """Resolved start of structure, its declared offset, or 0 when neither is set."""

    if structure.start is not None:
        return structure.start
    if structure.offset is not None:
        return structure.offset
    return 0


def resolve_offsets(volume: Volume) -> int:
    """Place every structure of volume and return the end of the volume.

    Structures without an explicit offset start where the previous one ends.
    An explicit offset inside the space already taken is an overlap (or an
    out-of-order declaration) and is rejected.
    """

    end = 0
    previous: Optional[Structure] = None
    for structure in volume.structures:
        start = end if structure.offset is None else structure.offset
        if start < end:
            raise LayoutError(
                f'volume {volume.name}: structure "{structure.name}" at offset {start} '
                f'overlaps "{previous.name if previous else ""}" ending at {end}'
            )
        structure.start = start
        end = max_offset(end, start + structure.size)
        previous = structure

    for structure in volume.structures:
        if structure.offset_write is not None:
            offset_write_position(volume, structure.offset_write)

    logger.debug("Resolved volume %s: end=%d", volume.name, end)
    return end


def offset_write_position(volume: Volume, offset_write: OffsetWrite) -> int:
    if not offset_write.relative_to:
        return offset_write.offset
    target = volume.find(offset_write.relative_to)
    if target is None:
        raise LayoutError(
            f"volume {volume.name}: offset-write refers to unknown structure {offset_write.relative_to!r}"
        )
    return get_structure_offset(target) + offset_write.offset


def volume_size(volume: Volume, sector_size: int = SECTOR_SIZE) -> int:
    end = 0
    for structure in volume.structures:
        end = max_offset(end, get_structure_offset(structure) + structure.size)
    if volume.schema == "gpt":
        end += GPT_BACKUP_SECTORS * sector_size
    return int(math.ceil(end / sector_size)) * sector_size


def calculate_image_size(gadget_info: Optional[GadgetInfo], sector_size: int = SECTOR_SIZE) -> int:
    if gadget_info is None:
        raise LayoutError("Cannot calculate image size before initializing GadgetInfo")
    return sum(volume_size(v, sector_size) for v in gadget_info.volumes.values())


def calculate_rootfs_size(rootfs_dir: str) -> int:
    """Apparent size of every file and symlink below rootfs_dir."""

    if not os.path.isdir(rootfs_dir):
        raise FileNotFoundError(rootfs_dir)

    total = 0
    for dirpath, dirnames, filenames in os.walk(rootfs_dir):
        for name in filenames:
            total += os.lstat(os.path.join(dirpath, name)).st_size
        for name in dirnames:
            path = os.path.join(dirpath, name)
            # os.walk does not descend into symlinked directories
            if os.path.islink(path):
                total += os.lstat(path).st_size
    return total


def pad_rootfs_size(size: int) -> int:
    # room for filesystem metadata and journal
    return int(math.ceil(size * 1.5)) + ROOTFS_PADDING


def correct_rootfs_size(structure: Structure, rootfs_size: int) -> Optional[str]:
    """Grow a system-data structure that cannot hold rootfs_size bytes.

    This is the only place the declared size is changed. Returns the warning
    to report, or None when nothing was changed.
    """

    if structure.role is not Role.SYSTEM_DATA or structure.size >= rootfs_size:
        return None
    warning = (
        f"WARNING: rootfs structure size {iec_size(structure.size)} "
        f"smaller than actual rootfs contents {iec_size(rootfs_size)}"
    )
    structure.size = rootfs_size
    return warning


def generate_unique_disk_id(existing: List[bytes], rng: RandomSource = os.urandom) -> bytes:
    for _ in range(MAX_DISK_ID_ATTEMPTS):
        try:
            candidate = bytes(rng(DISK_ID_SIZE))
        except OSError as e:
            raise DiskIDError(f"Failed to generate unique disk ID: {e}") from e
        if len(candidate) != DISK_ID_SIZE:
            raise DiskIDError(
                f"Failed to generate unique disk ID: random source returned {len(candidate)} bytes"
            )
        if candidate not in existing:
            existing.append(candidate)
            return candidate
        logger.debug("Disk ID %s already in use, retrying", candidate.hex())
    raise DiskIDError(
        f"Failed to generate unique disk ID after {MAX_DISK_ID_ATTEMPTS} attempts"
    )
