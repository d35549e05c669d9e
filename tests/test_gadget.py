"""Tests for gadget.py - sizes, gadget.yaml loading and the dict form."""

import pytest

from ubuntu_image_builder.gadget import (
    GIB,
    MIB,
    Bootloader,
    Filesystem,
    GadgetInfo,
    OffsetWrite,
    Role,
    gadget_from_dict,
    gadget_to_dict,
    load_gadget_yaml,
    parse_image_sizes,
    parse_size,
)


class TestParseSize:
    @pytest.mark.parametrize(
        "value,expected",
        [(0, 0), (440, 440), ("440", 440), ("1M", MIB), ("8M", 8 * MIB), ("2G", 2 * GIB), (" 3 M ", 3 * MIB)],
    )
    def test_valid(self, value, expected):
        assert parse_size(value) == expected

    @pytest.mark.parametrize("value", ["", "1K", "-1", "abc", True, -5])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_size(value)


class TestParseImageSizes:
    def test_empty(self):
        assert parse_image_sizes("", ["pc"]) == {}

    def test_single_size_applies_to_all(self):
        assert parse_image_sizes("4G", ["pc", "data"]) == {"pc": 4 * GIB, "data": 4 * GIB}

    def test_per_volume(self):
        assert parse_image_sizes("pc:1G,data:100M", ["pc", "data"]) == {"pc": GIB, "data": 100 * MIB}

    def test_unknown_volume(self):
        with pytest.raises(ValueError, match="unknown volume"):
            parse_image_sizes("other:1G", ["pc"])

    def test_bad_entry(self):
        with pytest.raises(ValueError):
            parse_image_sizes("pc:1G,:2G", ["pc"])


class TestOffsetWrite:
    def test_relative(self):
        ow = OffsetWrite.parse("mbr+92")
        assert (ow.relative_to, ow.offset) == ("mbr", 92)
        assert ow.render() == "mbr+92"

    def test_absolute(self):
        ow = OffsetWrite.parse(1024)
        assert (ow.relative_to, ow.offset) == (None, 1024)
        assert ow.render() == "1024"


class TestLoadGadgetYaml:
    def test_loads_conftest_gadget(self, gadget_tree):
        info = load_gadget_yaml(str(gadget_tree / "meta" / "gadget.yaml"))

        pc = info.volumes["pc"]
        assert pc.schema == "mbr"
        assert pc.bootloader is Bootloader.GRUB
        mbr, writable = pc.structures
        assert mbr.role is Role.MBR and not mbr.is_partition
        assert mbr.content[0].image == "pc-boot.img"
        assert writable.role is Role.SYSTEM_DATA
        assert writable.filesystem is Filesystem.VFAT
        assert writable.label == "writable"
        assert (writable.offset, writable.size) == (MIB, 8 * MIB)
        assert writable.is_partition
        assert writable.start is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_gadget_yaml(str(tmp_path / "gadget.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "gadget.yaml"
        path.write_text("volumes: [unterminated\n", encoding="utf-8")
        with pytest.raises(ValueError, match="invalid gadget.yaml"):
            load_gadget_yaml(str(path))

    def test_mbr_role_from_type(self):
        info = gadget_from_dict({"volumes": {"pc": {"structure": [{"type": "mbr", "size": 440}]}}})
        assert info.volumes["pc"].structures[0].role is Role.MBR
        assert info.volumes["pc"].schema == "gpt"

    @pytest.mark.parametrize(
        "raw,message",
        [
            ({}, "at least one volume"),
            ({"volumes": {"pc": {"schema": "apm"}}}, "unsupported schema"),
            ({"volumes": {"pc": {"structure": [{"name": "x"}]}}}, "has no size"),
            ({"volumes": {"pc": {"structure": ["x"]}}}, "must be a mapping"),
            (
                {"volumes": {"pc": {"structure": [{"role": "mbr", "size": 440, "filesystem": "vfat"}]}}},
                "cannot carry a filesystem",
            ),
        ],
    )
    def test_rejects_bad_shapes(self, raw, message):
        with pytest.raises(ValueError, match=message):
            gadget_from_dict(raw)

    def test_unknown_role(self):
        with pytest.raises(ValueError):
            gadget_from_dict({"volumes": {"pc": {"structure": [{"role": "system-other", "size": 1}]}}})


class TestDictForm:
    def test_keeps_resolved_start_and_offset_write(self, pc_volume):
        pc_volume.structures[1].offset_write = OffsetWrite(offset=92, relative_to="mbr")
        pc_volume.structures[2].start = 5 * MIB
        again = gadget_from_dict(gadget_to_dict(GadgetInfo(volumes={"pc": pc_volume})))

        vol = again.volumes["pc"]
        assert vol.structures[1].offset_write == OffsetWrite(offset=92, relative_to="mbr")
        assert vol.structures[1].content[0].target == "EFI/boot/"
        assert vol.structures[2].start == 5 * MIB
        assert vol.structures[2].offset is None
        assert vol == pc_volume
