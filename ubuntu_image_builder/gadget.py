"""In-memory gadget model: volumes and their structures.

The loader only turns gadget.yaml into these objects and checks the shape of
each entry. Offsets and overlaps are resolved later by lib.layout.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

MIB = 1024 * 1024
GIB = 1024 * MIB

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([MG]?)\s*$")


class Bootloader(str, Enum):
    NONE = "none"
    UBOOT = "u-boot"
    PIBOOT = "piboot"
    LK = "lk"
    GRUB = "grub"


class Role(str, Enum):
    NONE = "none"
    MBR = "mbr"
    SYSTEM_BOOT = "system-boot"
    SYSTEM_DATA = "system-data"
    SYSTEM_SEED = "system-seed"
    SYSTEM_SAVE = "system-save"


class Filesystem(str, Enum):
    NONE = "none"
    VFAT = "vfat"
    EXT4 = "ext4"


def parse_size(value: Any) -> int:
    """Parse a byte count, accepting the M (MiB) and G (GiB) suffixes."""

    if isinstance(value, bool):
        raise ValueError(f"invalid size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"invalid size: {value}")
        return value

    m = _SIZE_RE.match(str(value))
    if not m:
        raise ValueError(f"invalid size: {value!r}")
    n = int(m.group(1))
    return n * {"": 1, "M": MIB, "G": GIB}[m.group(2)]


def parse_image_sizes(value: str, volume_names: List[str]) -> Dict[str, int]:
    """Parse --image-size.

    Either a single size applied to every volume, or a comma separated list of
    <volume>:<size> pairs.
    """

    if not value:
        return {}
    if ":" not in value:
        size = parse_size(value)
        return {name: size for name in volume_names}

    sizes: Dict[str, int] = {}
    for item in value.split(","):
        name, sep, size = item.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"invalid --image-size entry: {item!r}")
        name = name.strip()
        if name not in volume_names:
            raise ValueError(f"--image-size names unknown volume {name!r}")
        sizes[name] = parse_size(size)
    return sizes


@dataclass
class VolumeContent:
    source: str = ""
    target: str = ""
    image: str = ""
    offset: Optional[int] = None
    size: Optional[int] = None


@dataclass
class OffsetWrite:
    offset: int
    relative_to: Optional[str] = None

    @classmethod
    def parse(cls, value: Any) -> "OffsetWrite":
        # "mbr+92" or a bare offset
        text = str(value).strip()
        name, sep, off = text.rpartition("+")
        if sep:
            return cls(offset=parse_size(off), relative_to=name or None)
        return cls(offset=parse_size(text))

    def render(self) -> str:
        if self.relative_to:
            return f"{self.relative_to}+{self.offset}"
        return str(self.offset)


@dataclass
class Structure:
    name: str
    size: int
    type: str = ""
    role: Role = Role.NONE
    filesystem: Filesystem = Filesystem.NONE
    label: str = ""
    offset: Optional[int] = None
    offset_write: Optional[OffsetWrite] = None
    content: List[VolumeContent] = field(default_factory=list)
    # absolute start of the structure once lib.layout has resolved the volume
    start: Optional[int] = None

    @property
    def has_filesystem(self) -> bool:
        return self.filesystem is not Filesystem.NONE

    @property
    def is_partition(self) -> bool:
        return self.role is not Role.MBR and self.type not in {"bare", "mbr"}


@dataclass
class Volume:
    name: str
    schema: str = "gpt"
    bootloader: Bootloader = Bootloader.NONE
    id: str = ""
    structures: List[Structure] = field(default_factory=list)

    def find(self, name: str) -> Optional[Structure]:
        for structure in self.structures:
            if structure.name == name:
                return structure
        return None


@dataclass
class GadgetInfo:
    volumes: Dict[str, Volume] = field(default_factory=dict)

    def structures_with_role(self, role: Role) -> List[Structure]:
        return [s for v in self.volumes.values() for s in v.structures if s.role is role]


def _parse_content(raw: Dict[str, Any]) -> VolumeContent:
    if not isinstance(raw, dict):
        raise ValueError(f"content entry must be a mapping, got {raw!r}")
    return VolumeContent(
        source=str(raw.get("source") or ""),
        target=str(raw.get("target") or ""),
        image=str(raw.get("image") or ""),
        offset=None if raw.get("offset") is None else parse_size(raw["offset"]),
        size=None if raw.get("size") is None else parse_size(raw["size"]),
    )


def _parse_structure(raw: Dict[str, Any], volume_name: str, index: int) -> Structure:
    if not isinstance(raw, dict):
        raise ValueError(f"volume {volume_name}: structure #{index} must be a mapping")
    if raw.get("size") is None:
        raise ValueError(f"volume {volume_name}: structure #{index} has no size")

    stype = str(raw.get("type") or "")
    role = Role(raw.get("role") or ("mbr" if stype == "mbr" else "none"))
    structure = Structure(
        name=str(raw.get("name") or ""),
        size=parse_size(raw["size"]),
        type=stype,
        role=role,
        filesystem=Filesystem(raw.get("filesystem") or "none"),
        label=str(raw.get("filesystem-label") or ""),
        offset=None if raw.get("offset") is None else parse_size(raw["offset"]),
        offset_write=None if raw.get("offset-write") is None else OffsetWrite.parse(raw["offset-write"]),
        content=[_parse_content(c) for c in (raw.get("content") or [])],
        start=None if raw.get("start") is None else int(raw["start"]),
    )
    if structure.role is Role.MBR and structure.has_filesystem:
        raise ValueError(f"volume {volume_name}: mbr structure cannot carry a filesystem")
    return structure


def gadget_from_dict(raw: Dict[str, Any]) -> GadgetInfo:
    volumes = (raw or {}).get("volumes")
    if not isinstance(volumes, dict) or not volumes:
        raise ValueError("gadget must define at least one volume")

    info = GadgetInfo()
    for name, vol in volumes.items():
        vol = vol or {}
        schema = str(vol.get("schema") or "gpt")
        if schema not in {"gpt", "mbr"}:
            raise ValueError(f"volume {name}: unsupported schema {schema!r}")
        info.volumes[str(name)] = Volume(
            name=str(name),
            schema=schema,
            bootloader=Bootloader(vol.get("bootloader") or "none"),
            id=str(vol.get("id") or ""),
            structures=[
                _parse_structure(s, str(name), i) for i, s in enumerate(vol.get("structure") or [])
            ],
        )
    return info


def _content_to_dict(item: VolumeContent) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in ("source", "target", "image"):
        if getattr(item, key):
            out[key] = getattr(item, key)
    if item.offset is not None:
        out["offset"] = item.offset
    if item.size is not None:
        out["size"] = item.size
    return out


def gadget_to_dict(info: GadgetInfo) -> Dict[str, Any]:
    """Render info in gadget.yaml shape; gadget_from_dict reads it back."""

    volumes: Dict[str, Any] = {}
    for name, vol in info.volumes.items():
        structures = []
        for s in vol.structures:
            d: Dict[str, Any] = {
                "name": s.name,
                "size": s.size,
                "type": s.type,
                "role": s.role.value,
                "filesystem": s.filesystem.value,
            }
            if s.label:
                d["filesystem-label"] = s.label
            if s.offset is not None:
                d["offset"] = s.offset
            if s.offset_write is not None:
                d["offset-write"] = s.offset_write.render()
            if s.content:
                d["content"] = [_content_to_dict(c) for c in s.content]
            if s.start is not None:
                d["start"] = s.start
            structures.append(d)
        volumes[name] = {
            "schema": vol.schema,
            "bootloader": vol.bootloader.value,
            "id": vol.id,
            "structure": structures,
        }
    return {"volumes": volumes}


def load_gadget_yaml(path: str) -> GadgetInfo:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"invalid gadget.yaml: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError("gadget.yaml must contain a mapping/object")

    return gadget_from_dict(raw)
