from __future__ import annotations

import logging
import math
from typing import Callable, List

from ..errors import LayoutError
from ..gadget import Role, Structure, Volume
from .command import run_cmd
from .layout import SECTOR_SIZE, get_structure_offset

logger = logging.getLogger(__name__)


def partition_type(structure: Structure, schema: str) -> str:
    # hybrid types are "<mbr>,<gpt guid>"
    mbr_type, sep, gpt_type = structure.type.partition(",")
    if sep:
        return gpt_type if schema == "gpt" else mbr_type
    return structure.type


def sfdisk_script(volume: Volume, sector_size: int = SECTOR_SIZE) -> str:
    """Render an sfdisk script for the partitions of a resolved volume.

    mbr structures and bare regions are not partitions and are left out.
    """

    label = "gpt" if volume.schema == "gpt" else "dos"
    lines: List[str] = [f"label: {label}", "unit: sectors", f"sector-size: {sector_size}"]
    if volume.id and label == "gpt":
        lines.append(f"label-id: {volume.id}")
    lines.append("")

    for structure in volume.structures:
        if not structure.is_partition:
            continue
        offset = get_structure_offset(structure)
        if offset % sector_size:
            raise LayoutError(
                f"volume {volume.name}: structure {structure.name!r} offset {offset} "
                f"is not aligned to {sector_size} byte sectors"
            )
        fields = [
            f"start={offset // sector_size}",
            f"size={int(math.ceil(structure.size / sector_size))}",
        ]
        ptype = partition_type(structure, volume.schema)
        if ptype:
            fields.append(f"type={ptype}")
        if label == "gpt" and structure.name:
            fields.append(f'name="{structure.name}"')
        if label == "dos" and structure.role is Role.SYSTEM_BOOT:
            fields.append("bootable")
        lines.append(", ".join(fields))

    return "\n".join(lines) + "\n"


def write_partition_table(
    volume: Volume,
    image_path: str,
    *,
    sector_size: int = SECTOR_SIZE,
    run: Callable[..., object] = run_cmd,
) -> None:
    script = sfdisk_script(volume, sector_size)
    logger.debug("sfdisk script for %s:\n%s", volume.name, script)
    run(["sfdisk", "--no-reread", image_path], input_text=script)
    logger.info("Wrote %s partition table for %s", volume.schema, image_path)
