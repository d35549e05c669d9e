from __future__ import annotations

import logging
import os
import struct
from typing import Optional

from ..errors import ImageWriteError, OffsetBeyondEndError
from ..gadget import Role, Structure, Volume
from .command import CommandError
from .fileutil import DEFAULT_BLOCK_SIZE
from .layout import (
    SECTOR_SIZE,
    correct_rootfs_size,
    get_structure_offset,
    offset_write_position,
)
from .mkfs import MkfsRunner
from .ops import SystemOps

logger = logging.getLogger(__name__)

MBR_DISK_ID_OFFSET = 440

__all__ = ["ImageWriter", "MBR_DISK_ID_OFFSET", "get_structure_offset"]


class ImageWriter:
    """Materializes structures into partition images and patches disk images."""

    def __init__(
        self,
        gadget_dir: str,
        *,
        sector_size: int = SECTOR_SIZE,
        block_size: int = DEFAULT_BLOCK_SIZE,
        ops: Optional[SystemOps] = None,
        mkfs: Optional[MkfsRunner] = None,
    ) -> None:
        self.gadget_dir = gadget_dir
        self.sector_size = sector_size
        self.block_size = block_size
        self.ops = ops or SystemOps()
        self.mkfs = mkfs or MkfsRunner(run=self.ops.run)

    def copy_structure_content(
        self,
        volume: Volume,
        structure: Structure,
        structure_number: int,
        content_root: Optional[str],
        part_image: str,
        *,
        rootfs_size: int = 0,
    ) -> Optional[str]:
        """Write structure into part_image.

        Raw structures are zero-filled and get their image blobs copied in.
        Filesystem structures are zero-filled and formatted, populated from
        content_root when the structure carries content. Returns the rootfs
        size warning when the structure had to be grown first.
        """

        warning = correct_rootfs_size(structure, rootfs_size)
        if warning:
            print(warning)
            logger.warning(warning)

        files = self.ops.files
        logger.info(
            "Writing %s structure #%d (%s) to %s", volume.name, structure_number, structure.name, part_image
        )

        if not structure.has_filesystem:
            try:
                files.zero_fill(part_image, structure.size)
            except (OSError, ValueError) as e:
                raise ImageWriteError(f"Error zeroing partition: {e}") from e

            seek = 0
            for item in structure.content:
                if not item.image:
                    continue
                if item.offset is not None:
                    seek = item.offset
                try:
                    written = files.copy_blob(
                        os.path.join(self.gadget_dir, item.image),
                        part_image,
                        seek=seek,
                        block_size=self.block_size,
                        count=item.size,
                    )
                except (OSError, ValueError) as e:
                    raise ImageWriteError(f"Error copying image blob: {e}") from e
                seek += item.size if item.size is not None else written
            return warning

        try:
            files.zero_fill(part_image, structure.size)
        except (OSError, ValueError) as e:
            raise ImageWriteError(f"Error zeroing image file: {e}") from e

        label = structure.label or structure.name
        has_content = bool(structure.content) or (
            bool(content_root) and structure.role in {Role.SYSTEM_DATA, Role.SYSTEM_SEED}
        )
        if has_content:
            try:
                self.mkfs.make_with_content(
                    structure.filesystem, part_image, label, content_root or "", sector_size=self.sector_size
                )
            except (CommandError, OSError, ValueError) as e:
                raise ImageWriteError(f"Error running mkfs with content: {e}") from e
        else:
            try:
                self.mkfs.make(structure.filesystem, part_image, label, sector_size=self.sector_size)
            except (CommandError, OSError, ValueError) as e:
                raise ImageWriteError(f"Error running mkfs: {e}") from e
        return warning

    def write_offset_values(
        self,
        volume: Volume,
        image_path: str,
        sector_size: Optional[int] = None,
        image_size: Optional[int] = None,
    ) -> None:
        """Write the sector offset of every structure with offset-write.

        Each value is a little-endian uint32 written at the position named by
        the structure's offset-write. image_size defaults to the current file
        length.
        """

        sector_size = sector_size or self.sector_size
        for structure in volume.structures:
            if structure.offset_write is None:
                continue
            position = offset_write_position(volume, structure.offset_write)
            value = get_structure_offset(structure) // sector_size
            self._write_at(image_path, position, struct.pack("<I", value), image_size)

    def write_disk_id(self, image_path: str, disk_id: bytes) -> None:
        self._write_at(image_path, MBR_DISK_ID_OFFSET, disk_id)

    def _write_at(self, path: str, position: int, data: bytes, file_size: Optional[int] = None) -> None:
        if file_size is None:
            file_size = os.path.getsize(path)
        if position + len(data) > file_size:
            raise OffsetBeyondEndError(
                f"write offset beyond end of file: {position}+{len(data)} > {file_size} ({path})"
            )

        try:
            with self.ops.files.open_file(path, "r+b") as f:
                # writes to an append-only handle ignore seek() and land at EOF
                if "a" in getattr(f, "mode", ""):
                    raise OSError(f"{path} is open for appending only")
                f.seek(position)
                f.write(data)
                if f.tell() != position + len(data):
                    raise OSError(f"short write at {position} in {path}")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise ImageWriteError(f"Failed to write offset to disk: {e}") from e
        logger.debug("Wrote %d bytes at %d in %s", len(data), position, path)
