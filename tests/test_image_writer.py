"""Tests for lib/image_writer.py - structure materialization and raw writes."""

import struct

import pytest

from ubuntu_image_builder.errors import ImageWriteError, OffsetBeyondEndError
from ubuntu_image_builder.gadget import OffsetWrite, Structure, Volume, VolumeContent
from ubuntu_image_builder.lib import fileutil
from ubuntu_image_builder.lib.image_writer import MBR_DISK_ID_OFFSET, ImageWriter
from ubuntu_image_builder.lib.layout import resolve_offsets
from ubuntu_image_builder.lib.ops import FileOps, SystemOps


def _fail(*args, **kwargs):
    raise OSError("simulated failure")


class FailingMkfs:
    def make(self, *args, **kwargs):
        raise OSError("mkfs failed")

    def make_with_content(self, *args, **kwargs):
        raise OSError("mkfs with content failed")


@pytest.fixture
def gadget_dir(tmp_path):
    d = tmp_path / "gadget"
    d.mkdir()
    (d / "pc-boot.img").write_bytes(b"\xeb\x63" + b"\x90" * 438)
    return d


def _writer(gadget_dir, fake_run, *, block_size=fileutil.DEFAULT_BLOCK_SIZE, mkfs=None, **file_ops):
    return ImageWriter(
        str(gadget_dir),
        block_size=block_size,
        ops=SystemOps(files=FileOps(**file_ops), run=fake_run),
        mkfs=mkfs,
    )


class TestCopyStructureContentRaw:
    def test_copies_blob_into_zeroed_region(self, gadget_dir, fake_run, pc_volume, tmp_path):
        part = tmp_path / "part0.img"
        writer = _writer(gadget_dir, fake_run)

        assert writer.copy_structure_content(pc_volume, pc_volume.structures[0], 0, None, str(part)) is None

        assert part.read_bytes() == (gadget_dir / "pc-boot.img").read_bytes()

    def test_item_offset_and_size(self, gadget_dir, fake_run, tmp_path):
        raw = Structure(name="raw", size=1024, content=[VolumeContent(image="pc-boot.img", offset=100, size=10)])
        volume = Volume(name="pc", structures=[raw])
        part = tmp_path / "raw.img"

        _writer(gadget_dir, fake_run).copy_structure_content(volume, raw, 0, None, str(part))

        data = part.read_bytes()
        assert len(data) == 1024
        assert data[:100] == b"\0" * 100
        assert data[100:110] == b"\xeb\x63" + b"\x90" * 8
        assert data[110:] == b"\0" * 914

    def test_zeroing_failure(self, gadget_dir, fake_run, pc_volume, tmp_path):
        writer = _writer(gadget_dir, fake_run, zero_fill=_fail)
        with pytest.raises(ImageWriteError, match="Error zeroing partition"):
            writer.copy_structure_content(pc_volume, pc_volume.structures[0], 0, None, str(tmp_path / "p.img"))

    def test_zero_block_size(self, gadget_dir, fake_run, pc_volume, tmp_path):
        writer = _writer(gadget_dir, fake_run, block_size=0)
        with pytest.raises(ImageWriteError, match="Error copying image blob"):
            writer.copy_structure_content(pc_volume, pc_volume.structures[0], 0, None, str(tmp_path / "p.img"))

    def test_missing_blob(self, tmp_path, fake_run, pc_volume):
        writer = _writer(tmp_path / "empty", fake_run)
        with pytest.raises(ImageWriteError, match="Error copying image blob"):
            writer.copy_structure_content(pc_volume, pc_volume.structures[0], 0, None, str(tmp_path / "p.img"))


class TestCopyStructureContentFilesystem:
    def test_zeroing_failure(self, gadget_dir, fake_run, pc_volume, tmp_path):
        writer = _writer(gadget_dir, fake_run, zero_fill=_fail)
        with pytest.raises(ImageWriteError, match="Error zeroing image file"):
            writer.copy_structure_content(pc_volume, pc_volume.structures[1], 1, "", str(tmp_path / "p.img"))

    def test_mkfs_with_content_failure(self, gadget_dir, fake_run, pc_volume, tmp_path):
        writer = _writer(gadget_dir, fake_run, mkfs=FailingMkfs())
        with pytest.raises(ImageWriteError, match="Error running mkfs with content"):
            writer.copy_structure_content(pc_volume, pc_volume.structures[1], 1, "", str(tmp_path / "p.img"))

    def test_mkfs_failure_without_content(self, gadget_dir, fake_run, pc_volume, tmp_path):
        structure = pc_volume.structures[1]
        structure.content = []
        writer = _writer(gadget_dir, fake_run, mkfs=FailingMkfs())
        with pytest.raises(ImageWriteError, match="Error running mkfs:"):
            writer.copy_structure_content(pc_volume, structure, 1, None, str(tmp_path / "p.img"))

    def test_mkfs_with_staged_content(self, gadget_dir, fake_run, pc_volume, tmp_path):
        content = tmp_path / "part1"
        (content / "EFI" / "boot").mkdir(parents=True)
        (content / "EFI" / "boot" / "grubx64.efi").write_bytes(b"efi")
        part = tmp_path / "part1.img"

        _writer(gadget_dir, fake_run).copy_structure_content(
            pc_volume, pc_volume.structures[1], 1, str(content), str(part)
        )

        assert part.stat().st_size == 4 * 1024 * 1024
        assert fake_run.programs == ["mkfs.vfat", "mcopy"]
        assert fake_run.calls[0][0][-1] == str(part)
        assert "-n" in fake_run.calls[0][0] and "SYSTEM-BOOT" in fake_run.calls[0][0]

    def test_empty_rootfs_structure(self, gadget_dir, fake_run, pc_volume, tmp_path):
        part = tmp_path / "part2.img"

        _writer(gadget_dir, fake_run).copy_structure_content(pc_volume, pc_volume.structures[2], 2, None, str(part))

        assert fake_run.calls[0][0] == ["mkfs.ext4", "-F", "-q", "-L", "writable", str(part)]


class TestRootfsSizeWarning:
    def test_rootfs_structure_grown_to_content_size(self, gadget_dir, fake_run, pc_volume, tmp_path, capsys):
        rootfs = tmp_path / "rootfs"
        rootfs.mkdir()
        (rootfs / "file").write_bytes(b"x" * 4096)
        structure = pc_volume.structures[2]
        structure.size = 0
        rootfs_size = 12 * 1024 * 1024

        warning = _writer(gadget_dir, fake_run).copy_structure_content(
            pc_volume, structure, 2, str(rootfs), str(tmp_path / "part2.img"), rootfs_size=rootfs_size
        )

        out = capsys.readouterr().out
        assert "WARNING: rootfs structure size 0 B smaller than actual rootfs contents" in out
        assert warning in out
        assert structure.size == rootfs_size
        assert pc_volume.structures[2].size == rootfs_size
        assert (tmp_path / "part2.img").stat().st_size == rootfs_size
        assert fake_run.calls[0][0][-3:] == ["-d", str(rootfs), str(tmp_path / "part2.img")]

    def test_no_warning_when_big_enough(self, gadget_dir, fake_run, pc_volume, tmp_path, capsys):
        structure = pc_volume.structures[2]
        _writer(gadget_dir, fake_run).copy_structure_content(
            pc_volume, structure, 2, None, str(tmp_path / "p.img"), rootfs_size=1024
        )
        assert "WARNING" not in capsys.readouterr().out
        assert structure.size == 16 * 1024 * 1024


class TestWriteOffsetValues:
    @pytest.fixture
    def volume(self, pc_volume):
        pc_volume.structures[1].offset_write = OffsetWrite(offset=92, relative_to="mbr")
        resolve_offsets(pc_volume)
        return pc_volume

    def test_beyond_end_of_file(self, gadget_dir, fake_run, volume, tmp_path):
        img = tmp_path / "pc.img"
        img.write_bytes(b"")
        with pytest.raises(OffsetBeyondEndError, match="write offset beyond end of file"):
            _writer(gadget_dir, fake_run).write_offset_values(volume, str(img), 512)

    def test_explicit_image_size_too_small(self, gadget_dir, fake_run, volume, tmp_path):
        img = tmp_path / "pc.img"
        img.write_bytes(b"\0" * 4096)
        with pytest.raises(OffsetBeyondEndError):
            _writer(gadget_dir, fake_run).write_offset_values(volume, str(img), 512, 95)

    def test_fits_exactly(self, gadget_dir, fake_run, volume, tmp_path):
        img = tmp_path / "pc.img"
        img.write_bytes(b"\xff" * 96)

        _writer(gadget_dir, fake_run).write_offset_values(volume, str(img), 512)

        data = img.read_bytes()
        assert len(data) == 96
        assert struct.unpack("<I", data[92:96])[0] == (1024 * 1024) // 512
        assert data[:92] == b"\xff" * 92

    def test_write_failure(self, gadget_dir, fake_run, volume, tmp_path):
        img = tmp_path / "pc.img"
        img.write_bytes(b"\0" * 512)

        def read_only(path, mode="r"):
            return open(path, "rb")

        writer = _writer(gadget_dir, fake_run, open_file=read_only)
        with pytest.raises(ImageWriteError, match="Failed to write offset to disk"):
            writer.write_offset_values(volume, str(img), 512)

    def test_append_only_handle_fails_without_growing_image(self, gadget_dir, fake_run, volume, tmp_path):
        img = tmp_path / "pc.img"
        img.write_bytes(b"\0" * 512)

        def append_only(path, mode="r"):
            return open(path, "ab")

        writer = _writer(gadget_dir, fake_run, open_file=append_only)
        with pytest.raises(ImageWriteError, match="Failed to write offset to disk"):
            writer.write_offset_values(volume, str(img), 512)
        assert img.read_bytes() == b"\0" * 512

    def test_write_disk_id(self, gadget_dir, fake_run, tmp_path):
        img = tmp_path / "pc.img"
        img.write_bytes(b"\0" * 512)

        _writer(gadget_dir, fake_run).write_disk_id(str(img), b"\x01\x02\x03\x04")

        assert img.read_bytes()[MBR_DISK_ID_OFFSET : MBR_DISK_ID_OFFSET + 4] == b"\x01\x02\x03\x04"

    def test_disk_id_beyond_end(self, gadget_dir, fake_run, tmp_path):
        img = tmp_path / "small.img"
        img.write_bytes(b"\0" * 443)
        with pytest.raises(OffsetBeyondEndError):
            _writer(gadget_dir, fake_run).write_disk_id(str(img), b"\x01\x02\x03\x04")